#!/usr/bin/env python3
# cellforth_host_repl.py
#
# REPL host pour CellForth :
# - CLI (argparse) : scripts, -e CODE, -i, --no-restart, --trace, -v/--debug
# - lecture interactive via prompt_toolkit (PromptSession + complétion des mots)
# - les dot-commands (.stack, .dict, .see ...) sont traitées par le host,
#   les autres lignes partent telles quelles vers la VM
#
# Tests intégrés :
#   python cellforth_host_repl.py --test

from __future__ import annotations

import argparse
import io
import logging
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from typing import Any, Callable, Iterable, List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

from cellforth_input import EndOfInput, InputSource, LineReader, StdinLineReader
from cellforth_runtime import ForthVM, VMConfig
from cellforth_vm_core import ForthError, State, UnknownToken, format_cell

logger = logging.getLogger(__name__)

DOT_CMDS = {".bye", ".dict", ".help", ".here", ".rstack", ".see", ".stack"}


class HostREPL:
    """Dot-commands and line filtering around one ForthVM."""

    def __init__(self, vm: ForthVM, out: Optional[Any] = None) -> None:
        self.vm = vm
        # None -> sys.stdout at write time (patch_stdout friendly)
        self.out = out

    def _out(self) -> Any:
        return self.out if self.out is not None else sys.stdout

    # --- Dot-commands via dispatch table ---
    def _dotcmd_dispatch(self):
        return {
            ".help": self._dot_help,
            ".stack": self._dot_stack,
            ".rstack": self._dot_rstack,
            ".dict": self._dot_dict,
            ".see": self._dot_see,
            ".here": self._dot_here,
            ".bye": self._dot_bye,
        }

    def _dot_help(self, args, out):
        out.write(".stack .rstack .dict [filter] .see <word> .here .bye\n")
        out.write("Forth: .S  WORD FIND >CFA EXECUTE  : ;  IF ELSE THEN  BEGIN UNTIL AGAIN WHILE REPEAT\n")

    def _dot_stack(self, args, out):
        D = self.vm.D
        out.write(f"<{len(D)}> " + " ".join(map(format_cell, D)) + " \n")

    def _dot_rstack(self, args, out):
        R = self.vm.R
        out.write(f"<{len(R)}> " + " ".join(map(str, R)) + " \n")

    def _dot_dict(self, args, out):
        filt = args[0] if args else None
        names = self.vm.words()
        if filt:
            names = [n for n in names if filt.lower() in n.lower()]
        out.write(" ".join(sorted(names)) + "\n")

    def _dot_see(self, args, out):
        if not args:
            out.write("usage: .see <word>\n"); return
        try:
            out.write(self.vm.see(args[0]) + "\n")
        except UnknownToken:
            out.write(f"unknown: {args[0]}\n")

    def _dot_here(self, args, out):
        mem = self.vm.mem
        out.write(f"HERE={mem.here} LATEST={mem.latest} STATE={self.vm.state.value}\n")

    def _dot_bye(self, args, out):
        raise EndOfInput()

    def handle_dot_command(self, line: str, out: Optional[Any] = None) -> None:
        out = out if out is not None else self._out()
        parts = line.split()
        cmd, args = parts[0], parts[1:]
        h = self._dotcmd_dispatch().get(cmd)
        if not h:
            out.write(f"unknown dot-cmd: {cmd}\n")
            return
        h(args, out)

    def is_dot_command(self, line: str) -> bool:
        parts = line.split()
        return bool(parts) and parts[0] in DOT_CMDS

    def line_reader(self, inner: LineReader) -> LineReader:
        """Wrap a line reader so dot-command lines never reach the VM."""
        def read() -> str:
            while True:
                line = inner()
                if not self.is_dot_command(line):
                    return line
                self.handle_dot_command(line)
        return read


class ForthCompleter(Completer):
    """Case-insensitive completion on visible dictionary words (+ dot-commands at line start)."""

    def __init__(self, vm: ForthVM) -> None:
        self.vm = vm

    def get_completions(self, document, complete_event):
        word_before = document.get_word_before_cursor(WORD=True)
        if not word_before:
            return
        start_pos = -len(word_before)

        if word_before.startswith(".") and document.text_before_cursor.lstrip() == word_before:
            for dc in sorted(DOT_CMDS):
                if dc.startswith(word_before.lower()):
                    yield Completion(dc, start_position=start_pos)

        for name in self.vm.words():
            if name.upper().startswith(word_before.upper()):
                yield Completion(name, start_position=start_pos)


class PromptLineReader:
    """prompt_toolkit line reader; Ctrl-D ends the session, Ctrl-C only drops the line."""

    def __init__(self, vm: ForthVM, prompt: str = "ok> ", session: Optional[Any] = None) -> None:
        self.vm = vm
        self.prompt = prompt
        if session is None:
            session = PromptSession(completer=ForthCompleter(vm), history=InMemoryHistory(), complete_while_typing=False)
        self.session = session

    def __call__(self) -> str:
        while True:
            # la continuation d'une définition se voit au prompt
            prompt = self.prompt if self.vm.state is State.IMMEDIATE else "..> "
            try:
                return self.session.prompt(prompt)
            except KeyboardInterrupt:
                print("^C (use .bye or Ctrl-D to quit)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cellforth", description="CellForth interpreter")
    p.add_argument("files", nargs="*", metavar="FILE", help="Forth source files, interpreted in order")
    p.add_argument("-i", "--interactive", action="store_true", help="enter the REPL after the files / -e code")
    p.add_argument("-e", "--eval", action="append", default=[], metavar="CODE", help="interpret CODE (repeatable)")
    p.add_argument("--no-restart", action="store_true", help="stop at the first fault instead of restarting")
    p.add_argument("--trace", action="store_true", help="log every dispatched word (implies --debug)")
    p.add_argument("-v", "--verbose", action="store_true", help="log at INFO")
    p.add_argument("--debug", action="store_true", help="log at DEBUG")
    return p


def configure_logging(args: argparse.Namespace) -> None:
    level = logging.WARNING
    if args.verbose:
        level = logging.INFO
    if args.debug or args.trace:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args)

    config = VMConfig(restart_on_fault=not args.no_restart, trace=args.trace)
    source = InputSource()
    vm = ForthVM(source, config=config, out=sys.stdout)
    repl = HostREPL(vm)

    for path in args.files:
        try:
            with open(path, "r", encoding="utf-8") as f:
                source.feed(f.read())
        except OSError as e:
            logger.error("cannot read %s: %s", path, e)
            return 2
        logger.info("queued %s", path)
    for code in args.eval:
        source.feed(code)

    interactive = args.interactive or not (args.files or args.eval)
    tty = interactive and sys.stdin.isatty()
    if interactive:
        inner = PromptLineReader(vm, prompt=config.prompt) if tty else StdinLineReader(sys.stdin)
        source.reader = repl.line_reader(inner)

    try:
        if tty:
            print("CellForth REPL. .help for host commands, Ctrl-D to quit.")
            # patch_stdout : la sortie de la VM passe au-dessus du prompt
            with patch_stdout():
                vm.out = sys.stdout
                return vm.run()
        return vm.run()
    except ForthError as e:
        logger.debug("session stopped by %s", type(e).__name__)
        return 1
    finally:
        sys.stdout.flush()


####################################################################
# Tests intégrés (python cellforth_host_repl.py --test)

def _lines_reader(lines: Iterable[str]) -> Callable[[], str]:
    it = iter(lines)

    def read() -> str:
        try:
            return next(it)
        except StopIteration:
            raise EOFError from None
    return read


class FakeSession:
    def __init__(self, answers: List[Any]) -> None:
        self.answers = list(answers)
        self.prompts: List[str] = []

    def prompt(self, message: str) -> str:
        self.prompts.append(message)
        a = self.answers.pop(0)
        if isinstance(a, BaseException) or (isinstance(a, type) and issubclass(a, BaseException)):
            raise a
        return a


class TestHostREPL_DotCommands(unittest.TestCase):
    def setUp(self):
        self.vm = ForthVM()
        self.out = io.StringIO()
        self.repl = HostREPL(self.vm, out=self.out)

    def test_dot_stack(self):
        self.vm.interpret_line('1 2 S" x" TRUE')
        self.repl.handle_dot_command(".stack")
        self.assertEqual(self.out.getvalue(), '<4> 1 2 "x" TRUE \n')

    def test_dot_rstack_empty(self):
        self.repl.handle_dot_command(".rstack")
        self.assertEqual(self.out.getvalue(), "<0>  \n")

    def test_dot_dict_filter(self):
        self.vm.interpret_line(": SQUARE DUP * ;")
        self.repl.handle_dot_command(".dict squ")
        self.assertEqual(self.out.getvalue(), "SQUARE\n")

    def test_dot_dict_hides_shadowed_duplicates(self):
        self.vm.interpret_line(": DUP2 1 ; : DUP2 2 ;")
        self.repl.handle_dot_command(".dict dup2")
        self.assertEqual(self.out.getvalue(), "DUP2\n")

    def test_dot_see(self):
        self.vm.interpret_line(": ABS2 DUP 0 < IF NEGATE THEN ;")
        self.repl.handle_dot_command(".see abs2")
        self.assertEqual(self.out.getvalue(), ": ABS2 DUP 0 < 0BRANCH(2) NEGATE ;\n")

    def test_dot_see_variable_and_unknown(self):
        self.vm.interpret_line("VARIABLE V 3 V !")
        self.repl.handle_dot_command(".see V")
        self.repl.handle_dot_command(".see NOPE")
        self.assertEqual(self.out.getvalue(), "variable V (value=3)\nunknown: NOPE\n")

    def test_dot_see_without_word(self):
        self.repl.handle_dot_command(".see")
        self.assertEqual(self.out.getvalue(), "usage: .see <word>\n")

    def test_dot_here(self):
        self.repl.handle_dot_command(".here")
        self.assertTrue(self.out.getvalue().startswith(f"HERE={self.vm.mem.here} "))

    def test_unknown_dot_command(self):
        self.repl.handle_dot_command(".frob")
        self.assertEqual(self.out.getvalue(), "unknown dot-cmd: .frob\n")

    def test_dot_bye_ends_input(self):
        with self.assertRaises(EndOfInput):
            self.repl.handle_dot_command(".bye")

    def test_forth_dot_words_are_not_dot_commands(self):
        self.assertFalse(self.repl.is_dot_command(".S"))
        self.assertFalse(self.repl.is_dot_command('." hi"'))
        self.assertTrue(self.repl.is_dot_command("  .stack"))


class TestHostREPL_Session(unittest.TestCase):
    def test_line_reader_filters_dot_commands(self):
        out = io.StringIO()
        vm = ForthVM(out=out)
        repl = HostREPL(vm, out=out)
        vm.source.reader = repl.line_reader(_lines_reader(["1 2 +", ".stack", "DUP", ".bye", "99"]))
        self.assertEqual(vm.run(), 0)
        self.assertEqual(vm.D, [3, 3])
        self.assertEqual(out.getvalue(), "<1> 3 \n")

    def test_prompt_reader_retries_after_ctrl_c(self):
        vm = ForthVM()
        session = FakeSession([KeyboardInterrupt, ": SQ", "DUP * ;", EOFError])
        reader = PromptLineReader(vm, session=session)
        vm.source.reader = reader
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.assertEqual(vm.run(), 0)
        self.assertIn("^C", buf.getvalue())
        self.assertEqual(session.prompts, ["ok> ", "ok> ", "..> ", "ok> "])
        self.assertIsNotNone(vm.mem.find("SQ"))

    def test_completer(self):
        vm = ForthVM()
        vm.interpret_line(": DUPLICATE DUP ;")
        comp = ForthCompleter(vm)
        names = [c.text for c in comp.get_completions(Document("1 dup"), None)]
        self.assertIn("DUP", names)
        self.assertIn("DUPLICATE", names)
        self.assertNotIn(".dict", names)
        dots = [c.text for c in comp.get_completions(Document(".d"), None)]
        self.assertIn(".dict", dots)


class TestHostREPL_Main(unittest.TestCase):
    def run_main(self, argv: List[str]):
        buf = io.StringIO()
        with redirect_stdout(buf):
            code = main(argv)
        return code, buf.getvalue()

    def test_eval(self):
        code, out = self.run_main(["-e", ": DOUBLE DUP + ;", "-e", "21 DOUBLE ."])
        self.assertEqual(code, 0)
        self.assertEqual(out, "42 ")

    def test_script_file(self):
        fd, path = tempfile.mkstemp(suffix=".fs")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(": T 0 BEGIN 1 + DUP 100 = UNTIL ;\nT . CR\n")
            code, out = self.run_main([path])
        finally:
            os.remove(path)
        self.assertEqual(code, 0)
        self.assertEqual(out, "100 \n")

    def test_missing_file(self):
        code, _ = self.run_main(["/nonexistent/cellforth-missing.fs"])
        self.assertEqual(code, 2)

    def test_fault_with_restart_keeps_going(self):
        code, out = self.run_main(["-e", "DROP", "-e", "7 ."])
        self.assertEqual(code, 0)
        self.assertIn("error: data stack underflow", out)
        self.assertTrue(out.endswith("7 "))

    def test_no_restart_exit_code(self):
        code, out = self.run_main(["--no-restart", "-e", "DROP", "-e", "7 ."])
        self.assertEqual(code, 1)
        self.assertNotIn("7", out)


if __name__ == "__main__":
    if "--test" in sys.argv:
        sys.argv = [sys.argv[0]]
        unittest.main()
    else:
        sys.exit(main())
