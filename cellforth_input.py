#!/usr/bin/env python3
# cellforth_input.py
#
# Source de lignes pour la VM CellForth.
# - lignes pré-chargées (bootstrap, scripts) vidées en premier
# - puis lecteur de secours (terminal, fichier) s'il y en a un
# - plus rien -> EndOfInput (fin normale de session)
#
from __future__ import annotations

import io
import sys
import unittest
from collections import deque
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Optional, TextIO

DELIMITERS = " \t\r\n"

LineReader = Callable[[], str]


class EndOfInput(EOFError):
    """No more lines anywhere. Not a fault: the session ends cleanly."""


class StdinLineReader:
    """Read lines from a text stream; EOF on the stream means end of input."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream if stream is not None else sys.stdin

    def __call__(self) -> str:
        line = self.stream.readline()
        if not line:
            raise EndOfInput()
        return line.rstrip("\n")


class InputSource:
    """
    Buffered character/token source.

    The current line is kept in `buffer` with a trailing newline so that
    KEY sees line ends. When the buffer is used up, the next pre-seeded line
    is taken; once those are drained the fallback `reader` is asked.
    """

    def __init__(self, lines: Iterable[str] = (), reader: Optional[LineReader] = None) -> None:
        self._pending: deque[str] = deque()
        self.reader: Optional[LineReader] = reader
        self.buffer: str = ""
        self.pos: int = 0
        self.lineno: int = 0
        self.feed_lines(lines)

    # ---- feeding ----
    def feed(self, text: str) -> None:
        self.feed_lines(text.splitlines())

    def feed_lines(self, lines: Iterable[str]) -> None:
        for ln in lines:
            self._pending.append(ln)

    def has_pending(self) -> bool:
        return bool(self._pending) or self.pos < len(self.buffer)

    @contextmanager
    def detached(self) -> Iterator["InputSource"]:
        """Temporarily drop the fallback reader (only pre-seeded lines are read)."""
        saved = self.reader
        self.reader = None
        try:
            yield self
        finally:
            self.reader = saved

    # ---- line level ----
    def _refill(self) -> None:
        if self._pending:
            line = self._pending.popleft()
        elif self.reader is not None:
            try:
                line = self.reader()
            except EOFError as e:
                raise EndOfInput() from e
        else:
            raise EndOfInput()
        self.buffer = line + "\n"
        self.pos = 0
        self.lineno += 1

    def skip_line(self) -> None:
        self.pos = len(self.buffer)

    def clear(self) -> None:
        """Drop the current line and every pre-seeded line not read yet."""
        self._pending.clear()
        self.skip_line()

    # ---- char / token level ----
    def next_char(self) -> str:
        while self.pos >= len(self.buffer):
            self._refill()
        c = self.buffer[self.pos]
        self.pos += 1
        return c

    def next_token(self) -> str:
        """Next whitespace-delimited token; the delimiter after it is left unread."""
        while True:
            n = len(self.buffer)
            i = self.pos
            while i < n and self.buffer[i] in DELIMITERS:
                i += 1
            if i < n:
                start = i
                while i < n and self.buffer[i] not in DELIMITERS:
                    i += 1
                self.pos = i
                return self.buffer[start:i]
            self.pos = n
            self._refill()


####################################################################
# Tests

class TestInputSource(unittest.TestCase):
    def test_tokens_across_lines(self):
        src = InputSource(["  1 2\t+ ", "", "DUP"])
        toks = [src.next_token() for _ in range(4)]
        self.assertEqual(toks, ["1", "2", "+", "DUP"])
        with self.assertRaises(EndOfInput):
            src.next_token()

    def test_chars_include_line_end(self):
        src = InputSource(["ab"])
        self.assertEqual([src.next_char() for _ in range(3)], ["a", "b", "\n"])

    def test_token_leaves_delimiter_for_key(self):
        src = InputSource(['S" hi"'])
        self.assertEqual(src.next_token(), 'S"')
        self.assertEqual(src.next_char(), " ")
        self.assertEqual(src.next_char(), "h")

    def test_pending_lines_drained_before_reader(self):
        calls = []

        def reader():
            calls.append(1)
            if len(calls) > 1:
                raise EOFError
            return "from-reader"

        src = InputSource(["seeded"], reader=reader)
        self.assertEqual(src.next_token(), "seeded")
        self.assertEqual(calls, [])
        self.assertEqual(src.next_token(), "from-reader")
        with self.assertRaises(EndOfInput):
            src.next_token()

    def test_detached_ignores_reader(self):
        src = InputSource(reader=lambda: "never")
        with src.detached():
            with self.assertRaises(EndOfInput):
                src.next_token()
        self.assertEqual(src.next_token(), "never")

    def test_skip_line_and_clear(self):
        src = InputSource(["a b c", "d", "e"])
        self.assertEqual(src.next_token(), "a")
        src.skip_line()
        self.assertEqual(src.next_token(), "d")
        src.clear()
        self.assertFalse(src.has_pending())

    def test_stdin_reader_eof(self):
        reader = StdinLineReader(io.StringIO("one\ntwo\n"))
        src = InputSource(reader=reader)
        self.assertEqual([src.next_token(), src.next_token()], ["one", "two"])
        with self.assertRaises(EndOfInput):
            src.next_token()


if __name__ == "__main__":
    if "--test" in sys.argv:
        sys.argv = [sys.argv[0]]
        unittest.main()
