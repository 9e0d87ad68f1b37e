#!/usr/bin/env python3
"""
Name: chd
Description: a hexdump-like utility for Unicode characters
Author: Brian Raiter, breadbox@muppetlabs.com (Original C Author)
License: mit
"""

import sys
import os
import io
import re
import argparse
import codecs
import locale
import math
import unicodedata
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional

__version__ = "1.1"

# --- Exit Codes ---
EX_SUCCESS = 0
EX_FAILURE = 1

DEFAULT_LINE_WIDTH = 8
MAX_LINE_WIDTH = 255
INT_MAX = 2**31 - 1

# Every character occupies one fixed-width column in the hex part of a line.
FIELD_WIDTH = 6

CONTROL_PICTURES = 0x2400
REPLACEMENT_CHAR = '\uFFFD'

BAD_SEQUENCE_MESSAGE = "invalid or incomplete multibyte or wide character"

program_name = os.path.basename(sys.argv[0])


@dataclass
class Settings:
    """The user-controlled settings for one run of the program."""
    line_width: int = DEFAULT_LINE_WIDTH
    start_offset: int = 0
    max_characters: Optional[int] = None
    tolerate_bad_bytes: bool = False
    reverse: bool = False
    encoding: Optional[str] = None
    filenames: List[str] = field(default_factory=lambda: ['-'])

    def text_encoding(self) -> str:
        """The encoding of both the input and the output, defaulting to the locale's."""
        return self.encoding or locale.getpreferredencoding(False)

    def character_limit(self):
        return math.inf if self.max_characters is None else self.max_characters


@dataclass(frozen=True)
class RawByte:
    """A single byte of input that was not part of any valid character."""
    value: int


class BadCharacterError(Exception):
    """Raised when the input holds an invalid byte sequence and raw bytes are not accepted."""

    def __init__(self, source):
        super().__init__(f"{source}: {BAD_SEQUENCE_MESSAGE}")
        self.source = source


def describe_error(error):
    if isinstance(error, UnicodeError):
        return BAD_SEQUENCE_MESSAGE
    return error.strerror or str(error)


# --- Input ---

class SourceReader:
    """
    Presents a list of input files as a single stream of characters (or,
    when reading dump output back in, of text lines). Files are opened only
    when they are needed. A file that cannot be opened or read is reported
    on stderr and skipped, and the run carries on with the next one.
    """

    def __init__(self, filenames, encoding, tolerate_bad_bytes=False, stdin=None, stderr=None):
        self.filenames = list(filenames)
        self.encoding = encoding
        self.tolerate_bad_bytes = tolerate_bad_bytes
        self.stdin = stdin if stdin is not None else sys.stdin.buffer
        self.stderr = stderr if stderr is not None else sys.stderr
        self.failures = []

        self.index = 0
        self.current = None
        self.current_name = None
        self.text = None
        self.decoder = None
        # Bytes already taken from the current file that still need decoding.
        self.pushback = bytearray()
        # Characters decoded ahead of the caller.
        self.queued = deque()

    def fail(self, error):
        """Reports a problem with the current file. The run continues, but will exit non-zero."""
        print(f"{program_name}: {self.current_name}: {describe_error(error)}", file=self.stderr)
        self.failures.append((self.current_name, error))

    def _open_current(self):
        """
        Makes sure an input file is open, moving down the list of filenames
        past any that cannot be opened. Returns False when no files are left.
        """
        while self.current is None:
            if self.index >= len(self.filenames):
                return False
            name = self.filenames[self.index]
            if name == '-':
                self.current_name = 'stdin'
                self.current = self.stdin
            else:
                self.current_name = name
                try:
                    self.current = open(name, 'rb')
                except OSError as e:
                    self.fail(e)
                    self.index += 1
                    continue
            self.pushback.clear()
        return True

    def _close_current(self, report=True):
        """Closes the current file (leaving stdin open) and moves on to the next filename."""
        try:
            if self.current is self.stdin:
                if self.text is not None:
                    self.text.detach()
            elif self.text is not None:
                self.text.close()
            else:
                self.current.close()
        except OSError as e:
            if report:
                self.fail(e)
        finally:
            self.current = None
            self.text = None
            self.decoder = None
            self.index += 1

    def _read_byte(self):
        if self.pushback:
            byte = bytes(self.pushback[:1])
            del self.pushback[:1]
            return byte
        return self.current.read(1)

    def _decode_next(self):
        """
        Decodes one character from the current file, feeding the decoder a
        byte at a time. Returns None at the end of the file. An invalid
        sequence either raises BadCharacterError or, if raw bytes are
        accepted, gives back its first byte as a RawByte; the bytes after it
        are decoded again from scratch.
        """
        if self.decoder is None:
            # Each file starts out in the initial shift state.
            self.decoder = codecs.getincrementaldecoder(self.encoding)()
        saved = self.decoder.getstate()
        pending = bytearray()
        while True:
            byte = self._read_byte()
            pending += byte
            try:
                text = self.decoder.decode(byte, final=not byte)
            except UnicodeDecodeError:
                if not self.tolerate_bad_bytes:
                    raise BadCharacterError(self.current_name) from None
                if not pending:
                    return None
                self.decoder.setstate(saved)
                self.pushback[:0] = pending[1:]
                return RawByte(pending[0])
            if text:
                self.queued.extend(text[1:])
                return text[0]
            if not byte:
                return None

    def next_character(self):
        """
        Returns the next character of input as a str, or a RawByte for an
        undecodable byte, or None once every file has been read.
        """
        while True:
            if self.queued:
                return self.queued.popleft()
            if not self._open_current():
                return None
            try:
                ch = self._decode_next()
            except OSError as e:
                self.fail(e)
                self._close_current(report=False)
                continue
            if ch is not None:
                return ch
            self._close_current()

    def next_line(self, max_len):
        """
        Returns the next line of decoded text, at most max_len - 1 characters
        long (longer lines come back in pieces), or None once every file has
        been read.
        """
        while True:
            if not self._open_current():
                return None
            try:
                if self.text is None:
                    self.text = io.TextIOWrapper(self.current, encoding=self.encoding)
                line = self.text.readline(max(max_len - 1, 1))
            except (OSError, UnicodeDecodeError) as e:
                self.fail(e)
                self._close_current(report=False)
                continue
            if line:
                return line
            self._close_current()


# --- Dump Format ---

def display_width(cp):
    """
    Returns the number of terminal cells taken up by codepoint cp, the way
    wcwidth() reports it: 2 for wide East Asian characters, 0 for characters
    that combine with the one before, and -1 for characters that have no
    printable form at all.
    """
    if cp == 0:
        return 0
    if cp < 0x20 or 0x7F <= cp < 0xA0:
        return -1
    char = chr(cp)
    category = unicodedata.category(char)
    if category in ('Cn', 'Cs', 'Zl', 'Zp'):
        return -1
    if category in ('Mn', 'Me') or (category == 'Cf' and cp != 0xAD):
        return 0
    # Hangul medial vowels and final consonants.
    if 0x1160 <= cp <= 0x11FF:
        return 0
    if unicodedata.east_asian_width(char) in ('W', 'F'):
        return 2
    return 1


def render_field(ch):
    if isinstance(ch, RawByte):
        return f"   *{ch.value:02X}"
    cp = ord(ch)
    if cp < 256:
        return f"    {cp:02X}"
    return f"{cp:6X}"


def render_glyph(ch):
    """Shows a character in exactly two terminal cells."""
    if isinstance(ch, RawByte):
        return REPLACEMENT_CHAR + ' '
    cp = ord(ch)
    width = display_width(cp)
    if width == 2:
        return ch
    if width == 1:
        return ch + ' '
    if cp < 0x20:
        return chr(CONTROL_PICTURES + cp) + ' '
    return REPLACEMENT_CHAR + ' '


def render_line(characters, position, line_width=DEFAULT_LINE_WIDTH):
    """
    Formats one line of dump output for up to line_width characters, with
    position as the address. Short lines are padded so that the glyphs
    always start in the same column.
    """
    fields = ''.join(render_field(ch) for ch in characters)
    padding = ' ' * (FIELD_WIDTH * (line_width - len(characters)) + 5)
    glyphs = ''.join(render_glyph(ch) for ch in characters)
    return f"{position:08X}: {fields}{padding}{glyphs}\n"


HEX_FIELD = re.compile(r'\s*([0-9A-Fa-f]{1,6})')
RAW_FIELD = re.compile(r'\s*\*([0-9A-Fa-f]{2})')


class ShiftState:
    """
    The output encoder for one undump run. Characters are encoded one at a
    time, so for encodings with shift sequences (ISO-2022-JP and its kin)
    the encoder's state has to carry over from line to line, and has to be
    returned to the initial state once the output is complete.
    """

    def __init__(self, encoding):
        self.encoder = codecs.getincrementalencoder(encoding)()
        # True when something has been encoded since the last reset.
        self.dirty = False

    def encode_character(self, value):
        """Encodes codepoint value, substituting the replacement character if it can't be encoded."""
        try:
            char = chr(value)
        except ValueError:
            char = REPLACEMENT_CHAR
        try:
            data = self.encoder.encode(char)
        except UnicodeEncodeError:
            try:
                data = self.encoder.encode(REPLACEMENT_CHAR)
            except UnicodeEncodeError:
                data = self.encoder.encode('?')
        self.dirty = True
        return data

    def encode_raw_byte(self, value):
        """
        Returns a raw byte ready to be written verbatim. The encoder's shift
        state is left alone: the byte sat inside whatever shift was in effect
        when it was read, so that is where it goes back.
        """
        return bytes([value])

    def finalize(self):
        """Returns the bytes needed to get back to the initial shift state."""
        if not self.dirty:
            return b''
        self.dirty = False
        return self.encoder.encode('', final=True)


def parse_line(line, shift_state, output, line_width=DEFAULT_LINE_WIDTH):
    """
    Translates one line of dump output back into characters, writing their
    encoded bytes to output. Returns the number of characters written. A
    line of None resets the output's shift state instead.
    """
    if line is None:
        output.write(shift_state.finalize())
        return 0

    # Skip over the address.
    separator = line.find(' ')
    if separator < 0:
        return 0
    offset = separator + 1

    count = 0
    while count < line_width:
        chunk = line[offset:offset + FIELD_WIDTH]
        match = HEX_FIELD.fullmatch(chunk)
        if match:
            output.write(shift_state.encode_character(int(match.group(1), 16)))
        else:
            match = RAW_FIELD.fullmatch(chunk)
            if not match:
                break
            output.write(shift_state.encode_raw_byte(int(match.group(1), 16)))
        offset += FIELD_WIDTH
        count += 1
    return count


# --- Main Program ---

def dump(reader, settings, output):
    """Writes dump lines for the reader's input. Returns the number of characters dumped."""
    width = settings.line_width
    remaining = settings.character_limit()
    position = 0
    at_end = False

    while position < settings.start_offset:
        if reader.next_character() is None:
            at_end = True
            break
        position += 1

    dumped = 0
    while not at_end and remaining > 0:
        window = []
        while len(window) < width and remaining > 0:
            ch = reader.next_character()
            if ch is None:
                at_end = True
                break
            window.append(ch)
            remaining -= 1
        if window:
            output.write(render_line(window, position, width))
        position += len(window)
        dumped += len(window)
    return dumped


def undump(reader, settings, output):
    """Turns dump lines back into characters. Returns the number of characters written."""
    shift_state = ShiftState(reader.encoding)
    remaining = settings.character_limit()
    max_len = settings.line_width * 8 + 20
    written = 0

    while remaining > 0:
        line = reader.next_line(max_len)
        if line is None:
            break
        count = parse_line(line, shift_state, output, settings.line_width)
        remaining -= count
        written += count

    parse_line(None, shift_state, output)
    return written


def run(settings, stdin=None, stdout=None, stderr=None):
    """
    Runs a dump (or, with settings.reverse, an undump) over binary streams.
    Returns the exit status: EX_FAILURE if any input file had problems.
    BadCharacterError is left for the caller.
    """
    encoding = settings.text_encoding()
    stdout = stdout if stdout is not None else sys.stdout.buffer
    reader = SourceReader(settings.filenames, encoding, settings.tolerate_bad_bytes,
                          stdin=stdin, stderr=stderr)

    if settings.reverse:
        undump(reader, settings, stdout)
    else:
        output = io.TextIOWrapper(stdout, encoding=encoding, errors='replace',
                                  newline='\n', write_through=True)
        try:
            dump(reader, settings, output)
        finally:
            output.flush()
            output.detach()
    stdout.flush()

    return EX_FAILURE if reader.failures else EX_SUCCESS


def parse_count(text, name, maxval=None, minval=0):
    """Parses a small non-negative integer, in decimal, octal (0NNN) or hex (0xNN)."""
    try:
        if len(text) > 1 and text.startswith('0') and not text.startswith(('0x', '0X')):
            value = int(text, 8)
        else:
            value = int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid argument '{text}' for {name}")
    if value < minval or value > INT_MAX:
        raise argparse.ArgumentTypeError(f"invalid argument '{text}' for {name}")
    if maxval and value > maxval:
        raise argparse.ArgumentTypeError(f"value for {name} too large (maximum {maxval})")
    return value


def parse_encoding(text):
    try:
        return codecs.lookup(text).name
    except LookupError:
        raise argparse.ArgumentTypeError(f"unknown encoding '{text}'")


def main(argv=None):
    """Parses arguments and runs the dump or undump."""
    parser = argparse.ArgumentParser(
        description="Output a representation of the contents of FILENAME as character "
                    "codepoints, similar to xxd but Unicode-aware. With multiple arguments, "
                    "the files' contents are concatenated together. With no arguments, or "
                    "when FILENAME is -, read from standard input.",
        usage="%(prog)s [OPTIONS] [FILENAME ...]"
    )
    parser.add_argument('-c', '--count', metavar='N', default=DEFAULT_LINE_WIDTH,
                        type=partial(parse_count, name='count', maxval=MAX_LINE_WIDTH, minval=1),
                        help='Display N characters per line [default=8]')
    parser.add_argument('-i', '--ignore', action='store_true',
                        help='Treat invalid characters as individual bytes')
    parser.add_argument('-s', '--start', metavar='N', default=0,
                        type=partial(parse_count, name='start'),
                        help='Start N characters after start of input')
    parser.add_argument('-l', '--limit', metavar='N', default=None,
                        type=partial(parse_count, name='limit'),
                        help='Stop after N characters of input')
    parser.add_argument('-r', '--reverse', action='store_true',
                        help='Reverse operation: convert dump output to chars')
    parser.add_argument('-e', '--encoding', metavar='NAME', type=parse_encoding,
                        help="Encoding of the input and output [default: the locale's]")
    parser.add_argument('--version', action='version', version=f'%(prog)s v{__version__}')
    parser.add_argument('files', nargs='*', metavar='FILENAME',
                        help='Input files. Reads from stdin if none are given.')

    args = parser.parse_args(argv)

    try:
        locale.setlocale(locale.LC_ALL, '')
    except locale.Error:
        # An unusable locale leaves the C locale in place, as setlocale() does.
        pass

    settings = Settings(
        line_width=args.count,
        start_offset=args.start,
        max_characters=args.limit,
        tolerate_bad_bytes=args.ignore,
        reverse=args.reverse,
        encoding=args.encoding,
        filenames=args.files or ['-'],
    )

    try:
        status = run(settings)
    except BadCharacterError as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        status = EX_FAILURE

    sys.exit(status)


if __name__ == "__main__":
    main()
