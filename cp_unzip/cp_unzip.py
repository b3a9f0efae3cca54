#!/usr/bin/env python3
"""
cp_unzip - 解压文件名采用非 Unicode 代码页（GBK / Shift-JIS / Big5 ...）编码的 ZIP

Each entry name is converted from the given codepage to Unicode before it is
written to disk. Entries whose language-encoding flag (bit 11) is set are
always read as UTF-8, whatever codepage was requested.

Usage:
    python cp_unzip.py [-f CODEPAGE] [-d DIR] [-o] [-k] [-q] [-l] ARCHIVE

Examples:
    python cp_unzip.py -f SHIFT-JIS -d ./out 資料.zip
    python cp_unzip.py -f auto -l legacy.zip
"""

import argparse
import codecs
import logging
import os
import re
import stat
import sys
import zipfile
import zlib
from datetime import datetime
from typing import Dict, List, Optional

import chardet
from charset_normalizer import detect as cn_detect


UTF8 = 'utf-8'
AUTO = 'auto'

# general purpose flag bit 11: the name is stored as UTF-8
FLAG_LANGUAGE_ENCODING = 0x800

COPY_CHUNK_SIZE = 1024 * 1024

DETECT_CANDIDATES = ['cp936', 'gbk', 'gb18030', 'cp932', 'shift_jis', 'cp950', 'big5', 'cp949', 'utf-8']

logger = logging.getLogger('cp_unzip')


# ----------------- Logging setup -----------------

def setup_logging(verbose: bool = False, debug: bool = False):
    """Setup logging configuration with formatted output."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)

    class ColoredFormatter(logging.Formatter):
        COLORS = {
            'DEBUG': '\033[36m',    # Cyan
            'INFO': '\033[32m',     # Green
            'WARNING': '\033[33m',  # Yellow
            'ERROR': '\033[31m',    # Red
            'CRITICAL': '\033[35m', # Magenta
        }
        RESET = '\033[0m'

        def format(self, record):
            record.timestamp = datetime.now().strftime('%H:%M:%S')
            log_message = super().format(record)
            if hasattr(sys.stderr, 'isatty') and sys.stderr.isatty():
                color = self.COLORS.get(record.levelname, '')
                return f"{color}[{record.timestamp}] {record.levelname:8s} | {log_message}{self.RESET}"
            return f"[{record.timestamp}] {record.levelname:8s} | {log_message}"

    # stdout is reserved for file names (listing / progress)
    logging.basicConfig(
        level=level,
        format='%(message)s',
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    for handler in logging.root.handlers:
        handler.setFormatter(ColoredFormatter())

    return logger


# ----------------- Errors -----------------

class CpUnzipError(Exception):
    """Base class for every failure that aborts a run."""


class ArchiveError(CpUnzipError):
    pass


class ConversionError(CpUnzipError):
    def __init__(self, source: str, target: str, cause: Exception):
        self.source = source
        self.target = target
        self.cause = cause
        super().__init__(f"converting from {source} to {target}: {cause}")


class InvalidNameError(CpUnzipError):
    pass


class NameCollisionError(CpUnzipError):
    pass


class PathTraversalError(NameCollisionError):
    pass


class SizeMismatchError(CpUnzipError):
    def __init__(self, name: str, expected: int, actual: int):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"decompressed size does not match for {name}: expected {expected} bytes, wrote {actual}"
        )


class ExtractError(CpUnzipError):
    pass


# ----------------- Archive entries -----------------

class ArchiveEntry:
    """Read-only view of one archive record with its undecoded name bytes."""

    def __init__(self, raw_name: bytes, is_unicode: bool, size: int, opener):
        self.raw_name = raw_name
        self.is_unicode = is_unicode
        self.size = size
        self._opener = opener

    @classmethod
    def from_zipinfo(cls, zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> 'ArchiveEntry':
        is_unicode = bool(info.flag_bits & FLAG_LANGUAGE_ENCODING)
        # zipfile decoded the stored name with utf-8 or cp437; undo that
        raw_name = getattr(info, 'orig_filename', None) or info.filename
        raw_name = raw_name.encode(UTF8 if is_unicode else 'cp437', 'surrogateescape')
        return cls(raw_name, is_unicode, info.file_size, lambda: zf.open(info, 'r'))

    def open(self):
        return self._opener()

    def __repr__(self):
        return f"ArchiveEntry({self.raw_name!r}, is_unicode={self.is_unicode}, size={self.size})"


def open_archive(archive_path: str, target_codepage: str = UTF8) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(archive_path, 'r')
    except UnicodeDecodeError as e:
        # a name flagged as UTF-8 that is not valid UTF-8
        raise ConversionError(UTF8, target_codepage, e) from e
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(f"cannot open archive {archive_path}: {e}") from e


def iter_entries(zf: zipfile.ZipFile):
    for info in zf.infolist():
        yield ArchiveEntry.from_zipinfo(zf, info)


# ----------------- Name decoding -----------------

def is_unicode_codepage(name: str) -> bool:
    try:
        return codecs.lookup(name).name == UTF8
    except LookupError:
        return False


def convert(raw: bytes, from_codepage: str, to_codepage: str = UTF8) -> str:
    """Convert *raw* from one codepage to another and return a usable path string.

    A non-Unicode target yields the encoded bytes as the file-system name, the
    way a byte oriented converter (iconv) would hand them to the OS.
    """
    try:
        text = raw.decode(from_codepage)
        if is_unicode_codepage(to_codepage):
            return text
        return os.fsdecode(text.encode(to_codepage))
    except (LookupError, UnicodeError) as e:
        raise ConversionError(from_codepage, to_codepage, e) from e


def effective_codepage(entry: ArchiveEntry, configured: str) -> str:
    return UTF8 if entry.is_unicode else configured


def decode_entry_name(entry: ArchiveEntry, source_codepage: str, target_codepage: str = UTF8) -> str:
    source = effective_codepage(entry, source_codepage)
    name = convert(entry.raw_name, source, target_codepage)
    logger.debug(f"decode {entry.raw_name!r} [{source} -> {target_codepage}]: {name}")
    return name


def _decode_names(raw_names, encoding):
    try:
        return [b.decode(encoding, errors='replace') for b in raw_names]
    except LookupError:
        return None


def _score_decoded_names(texts):
    score = 0.0
    for s in texts:
        if not s:
            continue
        replacements = s.count('\ufffd')
        controls = sum(1 for ch in s if ord(ch) < 32 and ch not in '\t\n\r')
        cjk = sum(1 for ch in s if ('\u3400' <= ch <= '\u4dbf') or ('\u4e00' <= ch <= '\u9fff'))
        kana = sum(1 for ch in s if '\u3040' <= ch <= '\u30ff')
        hangul = sum(1 for ch in s if '\uac00' <= ch <= '\ud7a3')
        non_ascii = sum(1 for ch in s if ord(ch) >= 128)

        score += (cjk + kana + hangul) * 2.0
        score += non_ascii * 0.2
        score -= replacements * 20.0
        score -= controls * 5.0
    return score


def detect_codepage(entries: List[ArchiveEntry], decode_model: str = 'chardet',
                    confidence_threshold: float = 0.9) -> str:
    """Guess the codepage of the entry names that are not flagged as UTF-8.

    The detector result is taken when it is confident and the heuristic score
    does not strongly disagree; otherwise the best scoring common candidate wins.
    """
    raw_names = [e.raw_name for e in entries if not e.is_unicode]
    if not raw_names:
        logger.debug("all entries carry the UTF-8 flag, nothing to detect")
        return UTF8

    sample = b'\n'.join(raw_names)
    if decode_model == 'charset_normalizer':
        detection = cn_detect(sample)
    else:
        detection = chardet.detect(sample)
    detected = (detection or {}).get('encoding')
    confidence = float((detection or {}).get('confidence') or 0.0)
    logger.debug(f"{decode_model} result: {detected} (confidence {confidence:.3f})")

    candidates = []
    seen = set()
    for enc in ([detected] if detected else []) + DETECT_CANDIDATES:
        if enc.lower() not in seen:
            seen.add(enc.lower())
            candidates.append(enc)

    scored = []
    for enc in candidates:
        texts = _decode_names(raw_names, enc)
        if texts is not None:
            scored.append((_score_decoded_names(texts), enc))
    if not scored:
        raise ConversionError(AUTO, UTF8, ValueError("no candidate codepage can decode the entry names"))

    scored.sort(reverse=True, key=lambda x: x[0])
    best_score, chosen = scored[0]
    if detected and confidence >= confidence_threshold:
        det_texts = _decode_names(raw_names, detected)
        if det_texts is not None and _score_decoded_names(det_texts) >= best_score - 5.0:
            chosen = detected

    logger.info(f"detected filename codepage: {chosen}")
    return chosen


# ----------------- Path materialization -----------------

class ExtractOptions:
    def __init__(self, dest_dir: str = '.', source_codepage: str = UTF8, target_codepage: str = UTF8,
                 overwrite: bool = False, quiet: bool = False, keep_archive_dir: bool = False,
                 decode_model: str = 'chardet'):
        self.dest_dir = dest_dir
        self.source_codepage = source_codepage
        self.target_codepage = target_codepage
        self.overwrite = overwrite
        self.quiet = quiet
        self.keep_archive_dir = keep_archive_dir
        self.decode_model = decode_model


class DirectoryCache:
    """Directories confirmed to exist during one extraction run."""

    def __init__(self):
        self._paths = set()

    def __contains__(self, path):
        return path in self._paths

    def add(self, path: str):
        self._paths.add(path)

    def ensure(self, path: str):
        if path in self._paths:
            return
        if not os.path.isdir(path):
            logger.debug(f"mkdir -p {path}")
            os.makedirs(path, exist_ok=True)
        self._paths.add(path)


class Prompter:
    def ask(self, message: str, default: bool = False) -> bool:
        raise NotImplementedError


class FixedPrompter(Prompter):
    def __init__(self, answer: bool):
        self.answer = answer
        self.messages = []

    def ask(self, message: str, default: bool = False) -> bool:
        self.messages.append(message)
        return self.answer


def _parse_answer(answer: str, default: bool) -> bool:
    answer = answer.strip().lower()
    if answer in ('y', 'yes'):
        return True
    if answer in ('n', 'no'):
        return False
    return default


class TtyPrompter(Prompter):
    """Ask on the controlling terminal; answer *default* when there is none."""

    def ask(self, message: str, default: bool = False) -> bool:
        if os.name == 'nt':
            return self._ask_console(message, default)
        try:
            tty = open('/dev/tty', 'r+', encoding='utf-8')
        except OSError:
            return default
        with tty:
            try:
                tty.write(message + ' ')
                tty.flush()
                answer = tty.readline()
            except OSError:
                return default
        return _parse_answer(answer, default)

    def _ask_console(self, message, default):
        import msvcrt
        if not sys.stdin.isatty():
            return default
        print(message, end=' ', flush=True)
        answer = msvcrt.getwch()
        print()
        return _parse_answer(answer, default)


def output_path(dest_root: str, name: str) -> str:
    """Map a decoded entry name under *dest_root*, refusing names that escape it."""
    parts = [p for p in re.split(r'[\\/]', name) if p not in ('', '.')]
    path = os.path.join(dest_root, *parts)
    real_root = os.path.realpath(dest_root)
    if os.path.commonpath([real_root, os.path.realpath(path)]) != real_root:
        raise PathTraversalError(f"entry {name} escapes the destination directory")
    return path


def _is_directory_entry(name: str, size: int) -> bool:
    return name[-1] in '/\\' and size == 0


def _probe(path: str, cache: DirectoryCache):
    try:
        return os.stat(path)
    except FileNotFoundError:
        pass
    parent = os.path.dirname(path)
    if parent in cache or os.path.isdir(parent):
        return None
    # a missing ancestor, not just a missing file
    cache.ensure(parent)
    try:
        return os.stat(path)
    except FileNotFoundError:
        return None


def _copy_stream(src, dst) -> int:
    written = 0
    while True:
        chunk = src.read(COPY_CHUNK_SIZE)
        if not chunk:
            return written
        dst.write(chunk)
        written += len(chunk)


def print_name(name: str, out=None):
    """Print one file name; bytes of a non-Unicode target show as \\xNN escapes."""
    out = out or sys.stdout
    line = name.encode(UTF8, 'surrogateescape').decode(UTF8, 'backslashreplace')
    print(line, file=out, flush=True)


def materialize_entry(entry: ArchiveEntry, name: str, dest_root: str, options: ExtractOptions,
                      cache: DirectoryCache, prompter: Prompter) -> str:
    """Create the directory or file for one decoded entry.

    Returns "directory", "skipped" or "written". The progress line (unless
    quiet) is printed before the content is copied, so a size mismatch or a
    corrupt stream is reported after the name of the file being written.
    """
    if not name:
        raise InvalidNameError("empty filename")
    path = output_path(dest_root, name)

    try:
        if _is_directory_entry(name, entry.size):
            cache.ensure(path)
            return 'directory'

        st = _probe(path, cache)
        if st is not None:
            if stat.S_ISDIR(st.st_mode):
                raise NameCollisionError(f"cannot create file {name} over an existing directory")
            if not options.overwrite:
                if not prompter.ask(f"The output file '{name}' already exists. Overwrite? (y/N)", False):
                    logger.info(f"skip existing file: {path}")
                    return 'skipped'

        if not options.quiet:
            print_name(name)

        cache.ensure(os.path.dirname(path))
        with entry.open() as src, open(path, 'wb') as dst:
            written = _copy_stream(src, dst)
    except (OSError, EOFError, zipfile.BadZipFile, zlib.error) as e:
        raise ExtractError(f"{name}: {e}") from e

    if written != entry.size:
        raise SizeMismatchError(name, entry.size, written)
    return 'written'


# ----------------- Driver -----------------

def archive_output_root(archive_path: str, options: ExtractOptions) -> str:
    if not options.keep_archive_dir:
        return options.dest_dir
    basename = os.path.splitext(os.path.basename(archive_path))[0]
    return os.path.join(options.dest_dir, basename)


def _resolve_source_codepage(entries: List[ArchiveEntry], options: ExtractOptions) -> str:
    if options.source_codepage.lower() == AUTO:
        return detect_codepage(entries, decode_model=options.decode_model)
    return options.source_codepage


def list_names(archive_path: str, options: ExtractOptions, out=None) -> List[str]:
    out = out or sys.stdout
    names = []
    with open_archive(archive_path, options.target_codepage) as zf:
        entries = list(iter_entries(zf))
        source = _resolve_source_codepage(entries, options)
        for entry in entries:
            name = decode_entry_name(entry, source, options.target_codepage)
            print_name(name, out)
            names.append(name)
    return names


def _check_destination(dest_dir: str):
    if not os.path.exists(dest_dir):
        raise ExtractError(f"the destination directory does not exist: {dest_dir}")
    if not os.path.isdir(dest_dir):
        raise ExtractError(f"the destination path is not a directory: {dest_dir}")


def extract_archive(archive_path: str, options: ExtractOptions,
                    prompter: Optional[Prompter] = None) -> Dict[str, int]:
    """Extract every entry of *archive_path*; the first failure aborts the run."""
    prompter = prompter or TtyPrompter()
    if not options.overwrite:
        _check_destination(options.dest_dir)

    summary = {'written': 0, 'directories': 0, 'skipped': 0}
    cache = DirectoryCache()
    with open_archive(archive_path, options.target_codepage) as zf:
        entries = list(iter_entries(zf))
        source = _resolve_source_codepage(entries, options)
        dest_root = archive_output_root(archive_path, options)
        logger.info(f"extracting {archive_path} -> {dest_root} ({len(entries)} entries, codepage {source})")

        for entry in entries:
            name = decode_entry_name(entry, source, options.target_codepage)
            outcome = materialize_entry(entry, name, dest_root, options, cache, prompter)
            if outcome == 'directory':
                summary['directories'] += 1
            else:
                summary[outcome] += 1
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Decompress a ZIP file with non-unicode filenames. "
                    "Filenames are converted from the specified codepage to unicode.",
    )
    parser.add_argument('archive', help='ZIP file to extract')
    parser.add_argument('-f', '--from', dest='source_codepage',
                        default=os.environ.get('CP_UNZIP_FROM', UTF8),
                        help="codepage of filenames in ZIP, or 'auto' to detect it (env: CP_UNZIP_FROM)")
    parser.add_argument('-t', '--to', dest='target_codepage',
                        default=os.environ.get('CP_UNZIP_TO', UTF8),
                        help='codepage of output filenames. WARNING: change this only if you know '
                             'exactly what you are doing! (env: CP_UNZIP_TO)')
    parser.add_argument('-d', '--dest', dest='dest_dir', default='.',
                        help='directory to which to extract files')
    parser.add_argument('-o', '--overwrite', action='store_true', help='overwrite existing files')
    parser.add_argument('-k', '--keep-dir', dest='keep_archive_dir', action='store_true',
                        help='make a subdirectory named after the ZIP file and put files there')
    parser.add_argument('-q', '--quiet', action='store_true', help='suppress messages')
    parser.add_argument('-l', '--list', action='store_true', help='print filenames without extracting')
    parser.add_argument('--decode-model', choices=['chardet', 'charset_normalizer'], default='chardet',
                        help="detector used with '-f auto'")
    parser.add_argument('--verbose', action='store_true', help='输出详细信息')
    parser.add_argument('--debug', action='store_true', help='输出调试信息')
    return parser


def main(argv=None, prompter: Optional[Prompter] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(args=argv)
    setup_logging(verbose=args.verbose, debug=args.debug)

    options = ExtractOptions(
        dest_dir=args.dest_dir,
        source_codepage=args.source_codepage,
        target_codepage=args.target_codepage,
        overwrite=args.overwrite,
        quiet=args.quiet,
        keep_archive_dir=args.keep_archive_dir,
        decode_model=args.decode_model,
    )
    try:
        if args.list:
            list_names(args.archive, options)
        else:
            summary = extract_archive(args.archive, options, prompter=prompter)
            logger.info(f"done: {summary['written']} files, {summary['directories']} directories, "
                        f"{summary['skipped']} skipped")
    except CpUnzipError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.debug:
            import traceback
            logger.debug(traceback.format_exc())
        return 1
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
