# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import sys
import argparse
import errno
import os
import shutil
import logging
import subprocess
import tempfile
import time
import traceback
from pathlib import Path
from typing import NamedTuple, TextIO

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

# Keep at most 19/20 (95%) of the destination's capacity.
_KEEP_NUMERATOR   = 19
_KEEP_DENOMINATOR = 20

# Directory mtimes closer than this are considered equal.
_MTIME_TOLERANCE_NS = 1_000_000_000

class _DebugInfoFilter(logging.Filter):
	'''Logging filter that only allows DEBUG and INFO records to pass.'''

	def filter(self, record):
		return logging.DEBUG <= record.levelno <= logging.INFO

class _ArgParser:
	'''Argument parser for when this python file is run with arguments instead of an imported module.'''

	parser = argparse.ArgumentParser(
		description="Keep the most recently modified files of `src` in `dst`, filling at most 95% of the capacity of the volume holding `dst`. Files in `dst` that did not make the cut are deleted, new ones are copied over with rsync, and directory timestamps are fixed up afterwards.",
		epilog="(c) 2025 Joe Walter"
	)

	parser.add_argument("--src", metavar="path", required=True, help="The root directory to take the most recent files from.")
	parser.add_argument("--dst", metavar="path", required=True, help="The root directory to copy files to. Usually the mount point of a removable volume.")
	parser.add_argument("--rsync", metavar="path", type=str, default="rsync", help="The rsync executable used to copy files. (Defaults to \"rsync\" on the PATH.)")
	parser.add_argument("-n", "--dry-run", action="store_true", default=False, help="Forgo deleting files and rewriting timestamps, and run rsync with --dry-run. Changes that would have occurred will still be printed to console.")

	parser.add_argument("--log", metavar="path", nargs="?", type=str, default=None, const="auto", help="The path of the log file to use. It will be created if it does not exist. With \"auto\" or no argument, a tempfile will be used for the log, and it will be moved to the user's home directory after the run is done. If this flag is absent, then no logging will be performed.")
	parser.add_argument("--debug", action="store_true", default=False, help="Log debug messages.")
	parser.add_argument("-q", action="count", default=0, help="Forgo printing to stdout (-q) and stderr (-qq).")

	@staticmethod
	def parse(args:list[str]) -> argparse.Namespace:
		parsed_args = _ArgParser.parser.parse_args(args)
		parsed_args.quiet     = parsed_args.q >= 1
		parsed_args.veryquiet = parsed_args.q >= 2
		del parsed_args.q
		return parsed_args

class SyncError(Exception):
	'''Base class of the errors that abort a run.'''

class ScanError(SyncError):
	'''A directory tree could not be walked.'''

class ProbeError(SyncError):
	'''The capacity of the destination volume could not be read.'''

class DeletionError(SyncError):
	'''A file or directory under the destination could not be removed.'''

class TransferError(SyncError):
	'''The copy tool failed or exited with a non-zero status.'''

class MetadataError(SyncError):
	'''Directory timestamps could not be read or rewritten.'''

class _File(NamedTuple):
	'''A file found by `_scandir()`. `dir` is relative to the scanned root.'''

	dir   : str
	name  : str
	size  : int
	mtime : float

	@property
	def relpath(self) -> str:
		return os.path.join(self.dir, self.name)

class _Selection(NamedTuple):
	'''Files chosen by `_most_recent()`, newest first.'''

	files      : list[_File]
	total_size : int

class _Diff(NamedTuple):
	'''Files to copy to and delete from the destination.'''

	add    : list[_File]
	remove : list[_File]

class _Config(NamedTuple):
	'''Normalized arguments of a single `sync()` run.'''

	src_root : Path
	dst_root : Path
	rsync    : str
	dry_run  : bool

class Results:
	'''Various statistics and other information returned by `sync()`.'''

	def __init__(self) -> None:
		self.log_file   : Path | None = None

		self.success    : bool        = False
		self.errors     : list[str]   = []

		self.capacity   = 0
		self.kept_size  = 0

		self.add_count          = 0
		self.delete_success     = 0
		self.dir_delete_success = 0
		self.dir_update_success = 0

def sync_cmd(args:list[str]) -> Results:
	'''Run `sync()` with command line arguments.'''

	parsed_args = _ArgParser.parse(args)
	return sync(
		parsed_args.src,
		parsed_args.dst,
		rsync     = parsed_args.rsync,
		dry_run   = parsed_args.dry_run,
		log       = parsed_args.log,
		debug     = parsed_args.debug,
		quiet     = parsed_args.quiet,
		veryquiet = parsed_args.veryquiet
	)

def sync(
		src       : str | os.PathLike[str],
		dst       : str | os.PathLike[str],
		*,
		rsync     : str  = "rsync",
		dry_run   : bool = False,
		log       : str | os.PathLike[str] | None = None,
		debug     : bool = False,
		quiet     : bool = False,
		veryquiet : bool = False,
	) -> Results:
	'''
	Fills `dst` with the most recently modified files of `src`, up to 95% of the capacity of the volume holding `dst`. Files are ranked by modification time, newest first, and taken greedily until the next one would cross the threshold. Files in `dst` that are not among the chosen ones are deleted, directories left empty are removed, the missing chosen files are copied with rsync, and finally directory timestamps in `dst` are set to match `src`.

	Files are matched by relative path only. A file that changed in `src` but already exists under the same path in `dst` is not copied again.

	Args
		src (str or PathLike)  : The path of the root directory to take files from.
		dst (str or PathLike)  : The path of the root directory to copy files to.

		rsync (str)            : The rsync executable. (Defaults to `"rsync"`.)
		dry_run (bool)         : Whether to hold off deleting files and rewriting timestamps. rsync is run with `--dry-run`. Changes that would have occurred will still be printed to console. (Defaults to `False`.)

		log (str or PathLike)  : The path of the log file to use. It will be created if it does not exist. A value of "auto" means a tempfile will be used for the log, and it will be copied to the user's home directory after the run is done. A value of `None` will skip logging to a file. (Defaults to `None`.)
		debug (bool)           : Whether to log debug messages. (Default to `False`.)
		quiet (bool)           : Whether to forgo printing to stdout.
		veryquiet (bool)       : Whether to forgo printing to stdout and stderr.

	Example Console Output
		   /tank/photos
		-> /media/PHOTOS_A
		------------------
		Total size to be kept: 475000 (463 KB) (cap: 500000)
		- 2019/old.jpg
		- 2019/
		T . (atime: ... => ..., mtime: ... => ...)

		*** capsync finished successfully. ***

	Returns
		A `Results` object containing various statistics.
	'''
	results = Results()

	if logger.handlers:
		for handler in list(logger.handlers):
			logger.removeHandler(handler)

	log_file       = None
	tmp_log_file   = None
	handler_stdout = None
	handler_stderr = None
	handler_file   = None

	if veryquiet:
		quiet = True

	if not quiet:
		handler_stdout = logging.StreamHandler(sys.stdout)
		handler_stdout.setFormatter(logging.Formatter("%(message)s"))
		handler_stdout.addFilter(_DebugInfoFilter())
		if debug:
			handler_stdout.setLevel(logging.DEBUG)
		else:
			handler_stdout.setLevel(logging.INFO)
		logger.addHandler(handler_stdout)

	if not veryquiet:
		handler_stderr = logging.StreamHandler(sys.stderr)
		handler_stderr.setFormatter(logging.Formatter("%(message)s"))
		handler_stderr.setLevel(logging.WARNING)
		logger.addHandler(handler_stderr)

	try:
		if not isinstance(src, (str, os.PathLike)):
			msg = f"Bad type for arg 'src' (expected str or PathLike): {src}"
			raise TypeError(msg)
		if not isinstance(dst, (str, os.PathLike)):
			msg = f"Bad type for arg 'dst' (expected str or PathLike): {dst}"
			raise TypeError(msg)
		if not isinstance(rsync, str):
			msg = f"Bad type for arg 'rsync' (expected str): {rsync}"
			raise TypeError(msg)
		if not isinstance(dry_run, bool):
			msg = f"Bad type for arg 'dry_run' (expected bool): {dry_run}"
			raise TypeError(msg)
		if log is not None and not isinstance(log, (str, os.PathLike)):
			msg = f"Bad type for arg 'log' (expected str or PathLike): {log}"
			raise TypeError(msg)

		config = _Config(
			src_root = Path(os.path.normpath(src)),
			dst_root = Path(os.path.normpath(dst)),
			rsync    = rsync,
			dry_run  = dry_run,
		)

		if log is None:
			log_file = None
		elif log == "auto":
			timestamp = str(int(time.time()*1000))
			log_file = Path.home() / f"capsync.{timestamp}.log"
		else:
			log_file = Path(log)
		results.log_file = log_file

		if config.src_root.exists() and not config.src_root.is_dir():
			msg = f"Chosen 'src' is not a directory: {config.src_root}"
			raise ValueError(msg)
		if config.dst_root.exists() and not config.dst_root.is_dir():
			msg = f"Chosen 'dst' is not a directory: {config.dst_root}"
			raise ValueError(msg)
		if config.src_root.resolve() == config.dst_root.resolve():
			msg = f"Chosen 'src' and 'dst' point to the same directory"
			raise ValueError(msg)
		if log_file is not None and os.path.exists(log_file):
			msg = f"Chosen log already exists: {log_file}"
			raise ValueError(msg)

		if log_file is not None:
			with tempfile.NamedTemporaryFile(mode="w+", encoding="utf-8", delete=False) as tmp_log:
				tmp_log_file = Path(tmp_log.name)
			formatter = logging.Formatter("%(levelname)s: %(message)s")
			handler_file = logging.FileHandler(tmp_log_file, encoding="utf-8")
			handler_file.setFormatter(formatter)
			if debug:
				handler_file.setLevel(logging.DEBUG)
			else:
				handler_file.setLevel(logging.INFO)
			logger.addHandler(handler_file)

		logger.debug(f"Starting run: {config=} {log_file=} {debug=} {quiet=} {veryquiet=}")

		width = max(len(str(config.src_root)), len(str(config.dst_root))) + 3
		logger.info("   " + str(config.src_root))
		logger.info("-> " + str(config.dst_root))
		logger.info("-" * width)

		_run(config, results)

		logger.info("")
		logger.info("*** capsync finished successfully. ***")

		results.success = True

	except KeyboardInterrupt:
		logger.critical(f"Cancelled by user.")
		results.errors.append("Cancelled by user.")
	except (TypeError, ValueError) as e:
		logger.critical(f"Input Error: {e}")
		results.errors.append(str(e))
	except SyncError as e:
		msg = _error_summary(e)
		logger.critical(msg)
		results.errors.append(msg)
	except Exception as e:
		msg = "Unexpected error: " + _error_summary(e)
		logger.critical(msg)
		logger.critical(traceback.format_exc())
		results.errors.append(msg)

	finally:
		if dry_run:
			logger.info("")
			logger.info("*** DRY RUN ***")
		logger.info("")
		logger.info("Summary")
		logger.info("-------")
		logger.info(f"Kept: {_human_readable_size(results.kept_size)} of {_human_readable_size(results.capacity)}")
		logger.info(f"Files to Copy: {results.add_count}")
		logger.info(f"Files Deleted: {results.delete_success}")
		logger.info(f"Empty Dirs Deleted: {results.dir_delete_success}")
		logger.info(f"Dir Timestamps Updated: {results.dir_update_success}")

		if results.errors:
			logger.info("")
			logger.info(f"There were {len(results.errors)} errors.")
			if len(results.errors) <= 10:
				logger.info("Errors are reprinted below for convenience.")
				for error in results.errors:
					logger.info(error)

		if log_file:
			logger.info("")
			logger.info(f"Log file: {log_file}")

		if handler_stdout:
			logger.removeHandler(handler_stdout)

		if handler_stderr:
			logger.removeHandler(handler_stderr)

		if handler_file:
			logger.removeHandler(handler_file)
			handler_file.close()
			assert tmp_log_file is not None
			assert log_file is not None
			shutil.move(tmp_log_file, log_file)

	return results

def _run(config:_Config, results:Results) -> None:
	'''Runs every phase in order. The first error aborts the rest.'''

	src_files = _scandir(config.src_root)
	results.capacity = _capacity(config.dst_root)
	selection = _most_recent(src_files, results.capacity)
	results.kept_size = selection.total_size

	dst_files = _scandir(config.dst_root)
	diff = _compare(selection.files, dst_files)
	results.add_count = len(diff.add)

	results.delete_success = _remove_files(config.dst_root, diff.remove, dry_run=config.dry_run)
	if not config.dry_run:
		results.dir_delete_success = _remove_empty_dirs(config.dst_root)

	_transfer(config.src_root, config.dst_root, diff.add, rsync=config.rsync, dry_run=config.dry_run)

	results.dir_update_success = _update_dir_attributes(config.src_root, config.dst_root, dry_run=config.dry_run)

def _raise_scan_error(e:OSError) -> None:
	raise ScanError(f"Cannot scan: {e.filename}") from e

def _raise_prune_error(e:OSError) -> None:
	raise DeletionError(f"Cannot list directory: {e.filename}") from e

def _scandir(root:Path) -> list[_File]:
	'''
	Retrieves file information for all files under `root`, including paths relative to `root`, sizes, and mtimes. Symbolic links are listed as files and never followed.
	'''

	files = []
	for dir, subdirnames, filenames in os.walk(root, onerror=_raise_scan_error):
		logger.debug(f"scanning: {dir}")

		dir_relpath = os.path.relpath(dir, root)
		if dir_relpath == ".":
			dir_relpath = ""

		# os.walk lists links to directories with the directories
		links = [name for name in subdirnames if os.path.islink(os.path.join(dir, name))]
		for name in links:
			subdirnames.remove(name)

		for filename in filenames + links:
			file_path = os.path.join(dir, filename)
			try:
				stat = os.lstat(file_path)
			except OSError as e:
				raise ScanError(f"Cannot stat: {file_path}") from e
			files.append(_File(
				dir   = dir_relpath,
				name  = filename,
				size  = stat.st_size,
				mtime = stat.st_mtime,
			))

	return files

def _capacity(dir:Path) -> int:
	'''Total size in bytes of the volume holding `dir`. Free space is not taken into account.'''

	try:
		return shutil.disk_usage(dir).total
	except OSError as e:
		raise ProbeError(f"Cannot read volume capacity: {dir}") from e

def _most_recent(files:list[_File], capacity:int) -> _Selection:
	'''
	Picks the newest files that fit in 95% of `capacity`. Files are taken in order of modification time, newest first, with ties going to the smaller relative path. Selection stops at the first file that does not fit; older files are never used to fill the remaining space.

	>>> a = _File("", "a", 10, 2.0)
	>>> b = _File("", "b", 10, 1.0)
	>>> [f.name for f in _most_recent([b, a], 21).files]
	['a']
	>>> _most_recent([b, a], 22)
	_Selection(files=[_File(dir='', name='a', size=10, mtime=2.0), _File(dir='', name='b', size=10, mtime=1.0)], total_size=20)
	'''

	ranked = sorted(files, key=lambda f: (-f.mtime, f.relpath))
	total_size = 0
	kept = []
	for f in ranked:
		if (total_size + f.size) * _KEEP_DENOMINATOR > capacity * _KEEP_NUMERATOR:
			break
		total_size += f.size
		kept.append(f)
	logger.info(f"Total size to be kept: {total_size} ({_human_readable_size(total_size)}) (cap: {capacity})")
	return _Selection(kept, total_size)

def _compare(src_files:list[_File], dst_files:list[_File]) -> _Diff:
	'''
	Finds the files of `src_files` missing from `dst_files`, and those of `dst_files` missing from `src_files`. Only relative paths are compared.

	>>> a = _File("x", "a", 1, 0.0)
	>>> b = _File("x", "b", 1, 0.0)
	>>> c = _File("y", "c", 1, 0.0)
	>>> diff = _compare([a, b], [c, b._replace(size=2)])
	>>> [f.relpath for f in diff.add] == [a.relpath]
	True
	>>> [f.relpath for f in diff.remove] == [c.relpath]
	True
	'''

	src_relpaths = set(f.relpath for f in src_files)
	dst_relpaths = set(f.relpath for f in dst_files)

	add    = [f for f in src_files if f.relpath not in dst_relpaths]
	remove = [f for f in dst_files if f.relpath not in src_relpaths]
	logger.debug(f"add={[f.relpath for f in add]}")
	logger.debug(f"remove={[f.relpath for f in remove]}")
	return _Diff(add, remove)

def _remove_files(root:Path, files:list[_File], *, dry_run:bool = False) -> int:
	'''Deletes `files` from under `root`. Stops at the first failure; files already deleted stay deleted.'''

	count = 0
	for f in files:
		logger.info(f"- {f.relpath}")
		if dry_run:
			continue
		path = root / f.relpath
		try:
			os.remove(path)
		except OSError as e:
			raise DeletionError(f"Cannot delete file: {path}") from e
		count += 1
	return count

def _remove_empty_dirs(root:Path) -> int:
	'''
	Deletes every empty directory under (but not including) `root`.

	Directories are handled in the reverse of the order `os.walk` visits them, so children come before their parents and a parent emptied by the removal of its children is removed in the same pass.
	'''

	dirs = []
	for dir, _, _ in os.walk(root, onerror=_raise_prune_error):
		dirs.append(dir)

	count = 0
	for dir in reversed(dirs[1:]):
		try:
			with os.scandir(dir) as it:
				empty = next(it, None) is None
		except OSError as e:
			raise DeletionError(f"Cannot list directory: {dir}") from e
		if not empty:
			continue
		logger.info(f"- {os.path.relpath(dir, root)}{os.sep}")
		try:
			os.rmdir(dir)
		except OSError as e:
			if e.errno in (errno.ENOTEMPTY, errno.EEXIST):
				logger.warning(f"Directory no longer empty, skipping: {dir}")
				continue
			raise DeletionError(f"Cannot delete directory: {dir}") from e
		count += 1
	return count

def _write_manifest(files:list[_File], fp:TextIO) -> None:
	'''
	Writes the relative path of each file on its own line, in the format of rsync's `--files-from`.

	>>> import io
	>>> buf = io.StringIO()
	>>> _write_manifest([_File("", "a.jpg", 1, 0.0), _File("", "b.jpg", 1, 0.0)], buf)
	>>> buf.getvalue()
	'a.jpg\\nb.jpg\\n'
	'''

	for f in files:
		fp.write(f.relpath + "\n")

def _transfer(src_root:Path, dst_root:Path, files:list[_File], *, rsync:str = "rsync", dry_run:bool = False) -> None:
	'''Copies `files` from `src_root` to `dst_root` with rsync, creating missing directories. rsync's output is passed through as is.'''

	with tempfile.NamedTemporaryFile(mode="w", encoding="utf-8", suffix=".files", delete=False) as manifest:
		manifest_file = Path(manifest.name)

	try:
		with manifest_file.open("w", encoding="utf-8", errors="surrogateescape", newline="\n") as fp:
			_write_manifest(files, fp)

		cmd = [rsync, "-Pav", "--mkpath", f"--files-from={manifest_file}"]
		if dry_run:
			cmd.append("--dry-run")
		cmd += [str(src_root), str(dst_root)]
		logger.debug(f"running: {cmd}")

		# rsync writes straight to our stdout/stderr
		for handler in logger.handlers:
			handler.flush()
		try:
			completed = subprocess.run(cmd)
		except OSError as e:
			raise TransferError(f"Cannot run {rsync}") from e
		if completed.returncode != 0:
			raise TransferError(f"{rsync} exited with status {completed.returncode}")
	finally:
		manifest_file.unlink() # same as os.remove

def _update_dir_attributes(src_root:Path, dst_root:Path, *, dry_run:bool = False) -> int:
	'''
	Sets the access and modification times of each directory in `dst_root` to those of the matching directory in `src_root`, if the modification times are more than a second apart. Directories missing from `dst_root` are skipped. Returns the number of directories updated.
	'''

	count = 0
	for dir, _, _ in os.walk(src_root, onerror=_raise_scan_error):
		dir_relpath = os.path.relpath(dir, src_root)
		dst_dir = os.path.normpath(os.path.join(dst_root, dir_relpath))

		try:
			src_stat = os.stat(dir)
		except OSError as e:
			raise MetadataError(f"Cannot stat: {dir}") from e
		try:
			dst_stat = os.stat(dst_dir)
		except FileNotFoundError:
			continue
		except OSError as e:
			raise MetadataError(f"Cannot stat: {dst_dir}") from e

		if abs(src_stat.st_mtime_ns - dst_stat.st_mtime_ns) <= _MTIME_TOLERANCE_NS:
			continue

		logger.info(
			f"T {dir_relpath} ("
			f"atime: {_format_ns(dst_stat.st_atime_ns)} => {_format_ns(src_stat.st_atime_ns)}, "
			f"mtime: {_format_ns(dst_stat.st_mtime_ns)} => {_format_ns(src_stat.st_mtime_ns)})"
		)
		if dry_run:
			continue
		try:
			os.utime(dst_dir, ns=(src_stat.st_atime_ns, src_stat.st_mtime_ns))
		except OSError as e:
			raise MetadataError(f"Cannot set times: {dst_dir}") from e
		count += 1
	return count

def _format_ns(ns:int) -> str:
	'''
	Formats a timestamp in nanoseconds as local time.

	>>> _format_ns(0) == time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(0)) + ".000000000"
	True
	'''

	seconds, nanos = divmod(ns, 1_000_000_000)
	return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(seconds)) + f".{nanos:09d}"

def _human_readable_size(n:int) -> str:
	'''
	Translates `n` bytes into a human-readable size.

	>>> _human_readable_size(1023)
	'1023 bytes'
	>>> _human_readable_size(1024)
	'1 KB'
	>>> _human_readable_size(2.1 * 1024 * 1024)
	'2 MB'
	'''

	units = ["bytes", "KB", "MB", "GB", "TB", "PB"]
	i = 0
	while n >= 1024 and i < len(units) - 1:
		n //= 1024
		i += 1
	return f"{round(n)} {units[i]}"

def _error_summary(e):
	'''Get a one-line summary of an Error.'''

	if isinstance(e, SyncError):
		msg = f"{type(e).__name__}: {e}"
		cause = e.__cause__
		if isinstance(cause, OSError) and cause.strerror:
			msg += f" ({cause.strerror})"
		elif cause is not None:
			msg += f" ({type(cause).__name__}: {cause})"
	elif isinstance(e, OSError):
		error_type = type(e).__name__
		affected_file = getattr(e, "filename", "N/A")
		msg = f"{error_type}: {affected_file}"
	else:
		error_type = type(e).__name__
		error_message = getattr(e, "strerror", "Unknown error")
		msg = f"{error_type}: {error_message}"
	return msg

def main() -> None:
	try:
		results = sync_cmd(sys.argv[1:])
	except Exception:
		print()
		traceback.print_exc()
		sys.exit(1)
	sys.exit(0 if results.success else 1)

if __name__ == "__main__":
	main()
