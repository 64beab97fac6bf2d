import errno
import os
import re
import shutil
import stat
import subprocess
import sys
import time
import tempfile
import unittest
import doctest
from pathlib import Path
from unittest import mock

import capsync

def create_file_structure(root_dir:Path, structure:dict):
	'''Recursively creates a directory structure with files.'''
	root_dir.mkdir(parents=True, exist_ok=True)
	for name, content in structure.items():
		file_path = root_dir / name
		if isinstance(content, Path):
			# create symlink
			os.symlink(content, file_path)
		elif isinstance(content, dict):
			# create dir
			create_file_structure(file_path, content)
		elif isinstance(content, (tuple, list)):
			# Create file with modtime and content
			file_path.write_text(content[0] or "")
			mtime = float(content[1])
			os.utime(file_path, (mtime, mtime))
		elif content is None:
			# Create an empty file
			file_path.touch()
		else:
			# Create a file with content
			file_path.write_text(content)

def set_mtime(path:Path, seconds:int):
	os.utime(path, ns=(seconds * 1_000_000_000, seconds * 1_000_000_000))

def relpaths(files:list) -> list[str]:
	return [f.relpath for f in files]

def native(*paths:str) -> list[str]:
	return [p.replace("/", os.sep) for p in paths]

FAKE_RSYNC = '''#!/bin/sh
for arg in "$@"; do
	case "$arg" in
		--files-from=*)
			cp "${arg#--files-from=}" "@MANIFEST_COPY@"
			echo "${arg#--files-from=}" > "@MANIFEST_NAME@"
			;;
	esac
done
printf '%s\\n' "$@" > "@ARGS@"
exit @STATUS@
'''

def create_fake_rsync(dir:Path, status:int = 0) -> Path:
	'''Writes a stand-in for rsync that records its arguments and file list, then exits with `status`.'''
	script = dir / "fake-rsync"
	text = FAKE_RSYNC
	text = text.replace("@MANIFEST_COPY@", str(dir / "manifest.copy"))
	text = text.replace("@MANIFEST_NAME@", str(dir / "manifest.name"))
	text = text.replace("@ARGS@", str(dir / "args"))
	text = text.replace("@STATUS@", str(status))
	script.write_text(text)
	script.chmod(script.stat().st_mode | stat.S_IXUSR)
	return script

def rsync_has_mkpath() -> bool:
	'''Whether an rsync new enough for --mkpath (3.2.3) is installed.'''
	if shutil.which("rsync") is None:
		return False
	out = subprocess.run(["rsync", "--version"], capture_output=True, text=True).stdout
	m = re.search(r"version\s+(\d+)\.(\d+)\.(\d+)", out)
	return m is not None and tuple(int(x) for x in m.groups()) >= (3, 2, 3)

def load_tests(loader, tests, ignore):
	tests.addTests(doctest.DocTestSuite(capsync))
	return tests

class TestCapsync(unittest.TestCase):
	def test_scandir(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			file_structure = {
				"a": {
					"aa": {
						"1.txt": ("one", 1000),
					},
					"ab": {
					},
					"2.txt": ("twotwo", 2000),
				},
				"b": {
					"c": {
						"d": {
						},
					},
				},
				"3.txt": None,
			}
			create_file_structure(test_root, file_structure)

			files = capsync._scandir(test_root)
			self.assertEqual(
				sorted(relpaths(files)),
				sorted(native("a/aa/1.txt", "a/2.txt", "3.txt"))
			)

			by_path = {f.relpath: f for f in files}
			one = by_path[os.path.join("a", "aa", "1.txt")]
			self.assertEqual(one.dir, os.path.join("a", "aa"))
			self.assertEqual(one.name, "1.txt")
			self.assertEqual(one.size, 3)
			self.assertEqual(one.mtime, 1000)
			self.assertEqual(by_path[os.path.join("a", "2.txt")].size, 6)
			self.assertEqual(by_path["3.txt"].dir, "")
			self.assertEqual(by_path["3.txt"].size, 0)

	@unittest.skipIf(os.name == "nt", "symlinks need privileges on Windows")
	def test_scandir_symlinks(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"target": {
					"1.txt": None,
				},
				"src": {
					"linked-dir": test_root / "target",
					"linked-file": test_root / "target" / "1.txt",
				},
			})

			files = capsync._scandir(test_root / "src")
			self.assertEqual(sorted(relpaths(files)), ["linked-dir", "linked-file"])

	def test_scandir_missing_root(self):
		with tempfile.TemporaryDirectory() as temp_root:
			with self.assertRaises(capsync.ScanError):
				capsync._scandir(Path(temp_root) / "missing")

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_capacity(self):
		with tempfile.TemporaryDirectory() as temp_root:
			self.assertGreater(capsync._capacity(Path(temp_root)), 0)
			with self.assertRaises(capsync.ProbeError):
				capsync._capacity(Path(temp_root) / "missing")

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_most_recent(self):
		t0 = 1_700_000_000
		a = capsync._File("", "A", 10, t0)
		b = capsync._File("", "B", 10, t0 - 3600)

		selection = capsync._most_recent([b, a], 21)
		self.assertEqual(selection.files, [a])
		self.assertEqual(selection.total_size, 10)

		selection = capsync._most_recent([b, a], 22)
		self.assertEqual(selection.files, [a, b])
		self.assertEqual(selection.total_size, 20)

		self.assertEqual(capsync._most_recent([], 100), capsync._Selection([], 0))
		self.assertEqual(capsync._most_recent([a], 0).files, [])

		################################################################################

		# a big recent file stops the selection even if older small ones would fit
		new   = capsync._File("x", "new",   5,  3)
		big   = capsync._File("x", "big",   50, 2)
		small = capsync._File("x", "small", 1,  1)
		self.assertEqual(capsync._most_recent([small, big, new], 40).files, [new])
		self.assertEqual(capsync._most_recent([small, big, new], 60).files, [new, big, small])

		################################################################################

		# equal mtimes are ordered by relative path
		files = [capsync._File("d", name, 1, 5) for name in ["c", "a", "b"]]
		self.assertEqual([f.name for f in capsync._most_recent(files, 100).files], ["a", "b", "c"])

	def test_most_recent_threshold(self):
		files = [capsync._File("", f"{i}", size, 100 - i) for i, size in enumerate([7, 3, 11, 2, 0, 5, 13, 1])]
		ranked = sorted(files, key=lambda f: -f.mtime)
		for capacity in range(0, 60):
			selection = capsync._most_recent(files, capacity)
			self.assertLessEqual(selection.total_size * 20, capacity * 19)
			self.assertEqual(selection.total_size, sum(f.size for f in selection.files))
			self.assertEqual(selection.files, ranked[:len(selection.files)])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_compare(self):
		a = capsync._File("", "A", 10, 2)
		b = capsync._File("", "B", 10, 1)

		diff = capsync._compare([a], [b])
		self.assertEqual(diff.add, [a])
		self.assertEqual(diff.remove, [b])

		# same path with different size or mtime counts as present
		changed = a._replace(size=99, mtime=0)
		diff = capsync._compare([a], [changed])
		self.assertEqual(diff, capsync._Diff([], []))

		################################################################################

		src = [capsync._File("d", name, 1, 0) for name in ["5", "1", "4", "2"]]
		dst = [capsync._File("d", name, 1, 0) for name in ["9", "4", "7", "1"]]
		diff = capsync._compare(src, dst)
		self.assertEqual([f.name for f in diff.add], ["5", "2"])
		self.assertEqual([f.name for f in diff.remove], ["9", "7"])

		src_paths = set(relpaths(src))
		dst_paths = set(relpaths(dst))
		self.assertFalse(set(relpaths(diff.add)) & dst_paths)
		self.assertFalse(set(relpaths(diff.remove)) & src_paths)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_remove(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"a": {
					"b": {
						"1.txt": None,
					},
				},
				"c": {
					"2.txt": None,
					"3.txt": None,
				},
			})

			files = capsync._scandir(test_root)
			removed = [f for f in files if f.name in ("1.txt", "2.txt")]
			self.assertEqual(capsync._remove_files(test_root, removed), 2)
			self.assertTrue((test_root / "a" / "b").is_dir())

			# the emptied leaf and its emptied parent go in one pass
			self.assertEqual(capsync._remove_empty_dirs(test_root), 2)
			self.assertEqual(sorted(os.listdir(test_root)), ["c"])
			self.assertEqual(os.listdir(test_root / "c"), ["3.txt"])

	def test_remove_empty_dirs(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"a": {
					"b": {
						"c": {
						},
					},
					"d": {
					},
				},
				"e": {
					"f": {
						"1.txt": None,
					},
					"g": {
					},
				},
			})

			self.assertEqual(capsync._remove_empty_dirs(test_root), 5)
			self.assertEqual(os.listdir(test_root), ["e"])
			self.assertEqual(os.listdir(test_root / "e"), ["f"])

			# the root itself is kept even when empty
			shutil.rmtree(test_root / "e")
			self.assertEqual(capsync._remove_empty_dirs(test_root), 0)
			self.assertTrue(test_root.is_dir())

	def test_remove_files_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"1.txt": None,
				"3.txt": None,
			})

			files = [
				capsync._File("", "1.txt", 0, 0),
				capsync._File("", "2.txt", 0, 0),
				capsync._File("", "3.txt", 0, 0),
			]
			with self.assertRaises(capsync.DeletionError):
				capsync._remove_files(test_root, files)

			# no rollback, and nothing after the failure
			self.assertEqual(os.listdir(test_root), ["3.txt"])

	def test_remove_files_dry_run(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {"1.txt": None})

			files = capsync._scandir(test_root)
			self.assertEqual(capsync._remove_files(test_root, files, dry_run=True), 0)
			self.assertEqual(os.listdir(test_root), ["1.txt"])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	@unittest.skipIf(os.name == "nt", "needs a POSIX shell")
	def test_transfer(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			fake = create_fake_rsync(test_root, status=0)

			files = [
				capsync._File("a", "1.jpg", 1, 0),
				capsync._File("", "2.jpg", 1, 0),
			]
			capsync._transfer(src_root, dst_root, files, rsync=str(fake))

			self.assertEqual(
				(test_root / "manifest.copy").read_text().splitlines(),
				native("a/1.jpg", "2.jpg")
			)
			manifest_name = (test_root / "manifest.name").read_text().strip()
			self.assertFalse(os.path.exists(manifest_name))

			args = (test_root / "args").read_text().splitlines()
			self.assertEqual(args[:3], ["-Pav", "--mkpath", f"--files-from={manifest_name}"])
			self.assertEqual(args[3:], [str(src_root), str(dst_root)])

			################################################################################

			capsync._transfer(src_root, dst_root, files, rsync=str(fake), dry_run=True)
			args = (test_root / "args").read_text().splitlines()
			self.assertIn("--dry-run", args)
			self.assertEqual(args[-2:], [str(src_root), str(dst_root)])

	@unittest.skipIf(os.name == "nt", "needs a POSIX shell")
	def test_transfer_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			fake = create_fake_rsync(test_root, status=1)

			with self.assertRaises(capsync.TransferError):
				capsync._transfer(test_root, test_root, [capsync._File("", "1", 1, 0)], rsync=str(fake))
			manifest_name = (test_root / "manifest.name").read_text().strip()
			self.assertFalse(os.path.exists(manifest_name))

			with self.assertRaises(capsync.TransferError):
				capsync._transfer(test_root, test_root, [], rsync=str(test_root / "no-such-rsync"))

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_update_dir_attributes(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			create_file_structure(test_root, {
				"src": {
					"a": {
						"b": {
						},
					},
					"c": {
					},
				},
				"dst": {
					"a": {
						"b": {
						},
					},
				},
			})

			set_mtime(src_root / "a" / "b", 2000)
			set_mtime(dst_root / "a" / "b", 2001)
			set_mtime(src_root / "a", 1000)
			set_mtime(dst_root / "a", 5000)
			set_mtime(src_root, 3000)
			set_mtime(dst_root, 3000)

			self.assertEqual(capsync._update_dir_attributes(src_root, dst_root, dry_run=True), 0)
			self.assertEqual(os.stat(dst_root / "a").st_mtime_ns, 5000 * 1_000_000_000)

			self.assertEqual(capsync._update_dir_attributes(src_root, dst_root), 1)
			self.assertEqual(os.stat(dst_root / "a").st_mtime_ns, 1000 * 1_000_000_000)
			# within a second of the source, left alone
			self.assertEqual(os.stat(dst_root / "a" / "b").st_mtime_ns, 2001 * 1_000_000_000)
			# not in dst, skipped
			self.assertFalse((dst_root / "c").exists())

			self.assertEqual(capsync._update_dir_attributes(src_root, dst_root), 0)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	@unittest.skipIf(os.name == "nt", "needs a POSIX shell")
	def test_sync_transfer_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			now = int(time.time())
			create_file_structure(test_root, {
				"src": {
					"new": {
						"1.txt": ("new", now),
					},
				},
				"dst": {
					"old": {
						"2.txt": ("old", 1),
					},
				},
			})
			set_mtime(src_root, 1000)
			fake = create_fake_rsync(test_root, status=1)

			with mock.patch("capsync._capacity", return_value=1_000_000):
				results = capsync.sync(src_root, dst_root, rsync=str(fake), veryquiet=True)

			self.assertFalse(results.success)
			self.assertEqual(len(results.errors), 1)
			self.assertTrue(results.errors[0].startswith("TransferError"))
			self.assertEqual(results.add_count, 1)
			self.assertEqual(results.delete_success, 1)
			self.assertEqual(results.dir_delete_success, 1)

			# deletions stay, timestamps were not touched
			self.assertEqual(os.listdir(dst_root), [])
			self.assertEqual(results.dir_update_success, 0)
			self.assertNotEqual(os.stat(dst_root).st_mtime_ns, 1000 * 1_000_000_000)

	@unittest.skipIf(os.name == "nt", "needs a POSIX shell")
	def test_sync_selection(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			t0 = 1_700_000_000
			create_file_structure(test_root, {
				"src": {
					"A": ("a" * 10, t0),
					"B": ("b" * 10, t0 - 3600),
				},
				"dst": {
					"B": ("b" * 10, t0 - 3600),
				},
			})
			fake = create_fake_rsync(test_root, status=0)

			with mock.patch("capsync._capacity", return_value=21):
				results = capsync.sync(src_root, dst_root, rsync=str(fake), veryquiet=True)

			self.assertTrue(results.success)
			self.assertEqual(results.capacity, 21)
			self.assertEqual(results.kept_size, 10)
			self.assertEqual(results.add_count, 1)
			self.assertEqual(results.delete_success, 1)
			self.assertEqual((test_root / "manifest.copy").read_text().splitlines(), ["A"])
			self.assertEqual(os.listdir(dst_root), [])

	@unittest.skipIf(os.name == "nt", "needs a POSIX shell")
	def test_sync_dry_run(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			create_file_structure(test_root, {
				"src": {
					"1.txt": ("1", 2000),
				},
				"dst": {
					"empty": {
					},
					"2.txt": ("2", 1000),
				},
			})
			set_mtime(src_root, 3000)
			fake = create_fake_rsync(test_root, status=0)

			with mock.patch("capsync._capacity", return_value=1_000_000):
				results = capsync.sync(src_root, dst_root, rsync=str(fake), dry_run=True, veryquiet=True)

			self.assertTrue(results.success)
			self.assertEqual(results.delete_success, 0)
			self.assertEqual(results.dir_update_success, 0)
			self.assertEqual(sorted(os.listdir(dst_root)), ["2.txt", "empty"])
			self.assertIn("--dry-run", (test_root / "args").read_text().splitlines())

	@unittest.skipIf(os.name == "nt", "needs a POSIX shell")
	def test_sync_cmd(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
					"1.txt": None,
				},
				"dst": {
				},
			})
			fake = create_fake_rsync(test_root, status=0)

			with mock.patch("capsync._capacity", return_value=1_000_000):
				results = capsync.sync_cmd([
					"--src", f"{test_root}//src/./x/..",
					"--dst", f"{test_root}/dst/",
					"--rsync", str(fake),
					"-qq",
				])

			self.assertTrue(results.success)
			args = (test_root / "args").read_text().splitlines()
			self.assertEqual(args[-2:], [str(test_root / "src"), str(test_root / "dst")])

	def test_sync_input_errors(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
				},
				"file": None,
			})

			results = capsync.sync(test_root / "src", test_root / "src" / ".", veryquiet=True)
			self.assertFalse(results.success)

			results = capsync.sync(test_root / "src", test_root / "file", veryquiet=True)
			self.assertFalse(results.success)

			results = capsync.sync(test_root / "src", 5, veryquiet=True)
			self.assertFalse(results.success)

			results = capsync.sync(test_root / "missing", test_root / "src", veryquiet=True)
			self.assertFalse(results.success)
			self.assertTrue(results.errors[0].startswith("ScanError"))

	def test_sync_log(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			log_file = test_root / "capsync.log"
			create_file_structure(test_root, {"dst": {}})

			results = capsync.sync(test_root / "missing", test_root / "dst", log=log_file, veryquiet=True)
			self.assertFalse(results.success)
			self.assertEqual(results.log_file, log_file)
			text = log_file.read_text(encoding="utf-8")
			self.assertIn("CRITICAL: ScanError", text)
			self.assertIn("Files Deleted: 0", text)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	@unittest.skipUnless(sys.platform.startswith("linux"), "needs a file system that accepts any bytes in names")
	def test_sync_non_utf8_name(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			name = os.fsdecode(b"caf\xe9.jpg")
			create_file_structure(test_root, {
				"src": {
					name: ("x", 2000),
				},
				"dst": {
					"old.jpg": ("o", 1),
				},
			})
			fake = create_fake_rsync(test_root, status=0)

			with mock.patch("capsync._capacity", return_value=1_000_000):
				results = capsync.sync(src_root, dst_root, rsync=str(fake), veryquiet=True)

			self.assertTrue(results.success, results.errors)
			self.assertEqual(results.add_count, 1)
			self.assertEqual(results.delete_success, 1)
			self.assertEqual((test_root / "manifest.copy").read_bytes(), b"caf\xe9.jpg\n")

	def test_scandir_unreadable_entry(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"a": {
					"1.txt": None,
					"bad.txt": None,
				},
				"b": {
					"locked": {
						"2.txt": None,
					},
				},
			})

			real_lstat = os.lstat
			def lstat(path, *args, **kwargs):
				if os.path.basename(path) == "bad.txt":
					raise PermissionError(errno.EACCES, "Permission denied", os.fspath(path))
				return real_lstat(path, *args, **kwargs)

			with mock.patch("os.lstat", side_effect=lstat):
				with self.assertRaises(capsync.ScanError):
					capsync._scandir(test_root)

			real_scandir = os.scandir
			def scandir(path=".", *args, **kwargs):
				if os.path.basename(path) == "locked":
					raise PermissionError(errno.EACCES, "Permission denied", os.fspath(path))
				return real_scandir(path, *args, **kwargs)

			with mock.patch("os.scandir", side_effect=scandir):
				with self.assertRaises(capsync.ScanError):
					capsync._scandir(test_root / "b")

	def test_remove_empty_dirs_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {"a": {}})

			with mock.patch("os.rmdir", side_effect=OSError(errno.EIO, "Input/output error")):
				with self.assertRaises(capsync.DeletionError):
					capsync._remove_empty_dirs(test_root)

			# filled in by someone else after the check, skipped
			with mock.patch("os.rmdir", side_effect=OSError(errno.ENOTEMPTY, "Directory not empty")):
				self.assertEqual(capsync._remove_empty_dirs(test_root), 0)
			self.assertTrue((test_root / "a").is_dir())

			with self.assertRaises(capsync.DeletionError):
				capsync._remove_empty_dirs(test_root / "missing")

	def test_update_dir_attributes_utime_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			create_file_structure(test_root, {
				"src": {
					"a": {
					},
				},
				"dst": {
					"a": {
					},
				},
			})
			set_mtime(src_root / "a", 1000)
			set_mtime(src_root, 3000)
			set_mtime(dst_root, 3000)

			with mock.patch("os.utime", side_effect=PermissionError(errno.EPERM, "Operation not permitted")):
				with self.assertRaises(capsync.MetadataError):
					capsync._update_dir_attributes(src_root, dst_root)
			self.assertNotEqual(os.stat(dst_root / "a").st_mtime_ns, 1000 * 1_000_000_000)

	@unittest.skipIf(os.name == "nt", "Windows reports a missing path instead")
	def test_update_dir_attributes_stat_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			create_file_structure(test_root, {
				"src": {
					"a": {
						"b": {
						},
					},
				},
				"dst": {
					"a": None,
				},
			})
			set_mtime(src_root / "a", 4000)
			set_mtime(dst_root / "a", 4000)
			set_mtime(src_root, 3000)
			set_mtime(dst_root, 3000)

			# dst/a is a file, so dst/a/b is neither there nor missing
			with self.assertRaises(capsync.MetadataError):
				capsync._update_dir_attributes(src_root, dst_root)

	@unittest.skipUnless(rsync_has_mkpath(), "needs rsync 3.2.3 or later")
	def test_sync_rsync(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src_root = test_root / "src"
			dst_root = test_root / "dst"
			t0 = 1_700_000_000
			create_file_structure(test_root, {
				"src": {
					"2023": {
						"jan": {
							"1.jpg": ("x" * 100, t0 - 300),
							"2.jpg": ("x" * 100, t0 - 200),
						},
						"dec": {
							"3.jpg": ("x" * 100, t0 - 100),
						},
					},
					"2022": {
						"old.jpg": ("x" * 100, t0 - 10_000),
					},
				},
				"dst": {
					"2021": {
						"gone": {
							"4.jpg": ("y" * 50, t0 - 20_000),
						},
					},
				},
			})
			set_mtime(src_root / "2023" / "jan", t0 - 50)
			set_mtime(src_root / "2023" / "dec", t0 - 40)
			set_mtime(src_root / "2023", t0 - 30)

			# room for three files
			with mock.patch("capsync._capacity", return_value=320):
				results = capsync.sync(src_root, dst_root, veryquiet=True)
			self.assertTrue(results.success, results.errors)
			self.assertEqual(results.kept_size, 300)
			self.assertEqual(results.add_count, 3)
			self.assertEqual(results.delete_success, 1)
			self.assertEqual(results.dir_delete_success, 2)

			self.assertEqual(
				sorted(relpaths(capsync._scandir(dst_root))),
				sorted(native("2023/jan/1.jpg", "2023/jan/2.jpg", "2023/dec/3.jpg"))
			)
			for dir in ["2023", os.path.join("2023", "jan"), os.path.join("2023", "dec")]:
				delta = os.stat(src_root / dir).st_mtime_ns - os.stat(dst_root / dir).st_mtime_ns
				self.assertLessEqual(abs(delta), 1_000_000_000)

			# nothing left to do on a second run
			with mock.patch("capsync._capacity", return_value=320):
				results = capsync.sync(src_root, dst_root, veryquiet=True)
			self.assertTrue(results.success, results.errors)
			self.assertEqual(results.add_count, 0)
			self.assertEqual(results.delete_success, 0)
			self.assertEqual(results.dir_delete_success, 0)

if __name__ == "__main__":
	unittest.main()
