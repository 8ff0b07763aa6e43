#!/usr/bin/env python3
# cellforth_runtime.py
#
# Couche CellForth au-dessus du noyau cellforth_vm_core.VM :
# - source Forth de démarrage (IF/ELSE/THEN, boucles, VARIABLE, CONSTANT...)
#   écrite avec les seuls mots du noyau
# - VMConfig : options de session
# - ForthVM : VM bootée + boucle de haut niveau avec redémarrage après faute
#
from __future__ import annotations

import io
import logging
import sys
import unittest
from dataclasses import dataclass
from typing import Any, Optional

from cellforth_input import EndOfInput, InputSource, StdinLineReader
from cellforth_vm_core import (
    VM, Abort, CellTypeError, ForthError, State, StackUnderflow, WFlags, XT, to_cfa,
)

logger = logging.getLogger(__name__)

# Les structures de contrôle compilent 0BRANCH/BRANCH suivis d'une cellule
# d'offset relatif à cette cellule, patchée plus tard via HERE et "!".
BOOT_SRC = r"""
: LITERAL IMMEDIATE ['] LIT , , ;
: RECURSE IMMEDIATE LATEST >CFA , ;

\ ( -- addr ) leaves the offset cell to patch
: IF IMMEDIATE ['] 0BRANCH , HERE 0 , ;
: THEN IMMEDIATE DUP HERE SWAP - SWAP ! ;
: ELSE IMMEDIATE DUP HERE SWAP - 2 + SWAP ! ['] BRANCH , HERE 0 , ;

: BEGIN IMMEDIATE HERE ;
: UNTIL IMMEDIATE ['] 0BRANCH , HERE - , ;
: AGAIN IMMEDIATE ['] BRANCH , HERE - , ;
: WHILE IMMEDIATE ['] 0BRANCH , HERE 0 , ;
: REPEAT IMMEDIATE ['] BRANCH , SWAP HERE - , DUP HERE SWAP - SWAP ! ;

: VARIABLE ( <name> -- ) WORD CREATE DOVAR, 0 , ;
: CONSTANT ( n <name> -- ) WORD CREATE DOCOL, ['] LIT , , ['] EXIT , ;

: SPACE 32 EMIT ;
: CR 10 EMIT ;
: SPACES ( n -- ) BEGIN DUP 0> WHILE SPACE 1- REPEAT DROP ;
: ? ( addr -- ) @ . ;
"""


@dataclass
class VMConfig:
    boot: bool = True
    restart_on_fault: bool = True
    trace: bool = False
    prompt: str = "ok> "


class ForthVM(VM):
    """
    VM CellForth complète.

    - charge BOOT_SRC (sauf config.boot=False)
    - run() : boucle QUIT jusqu'à la fin de l'entrée ; les fautes sont
      signalées puis, si config.restart_on_fault, la VM est remise à zéro
      et QUIT relancé
    """

    def __init__(self, source: Optional[InputSource] = None, *, config: Optional[VMConfig] = None, out: Optional[Any] = None) -> None:
        self.config = config if config is not None else VMConfig()
        super().__init__(source, out=out, trace=self.config.trace)
        if self.config.boot:
            self.load_source(BOOT_SRC)
            logger.info("bootstrap loaded: %d words, HERE=%d", len(self.words()), self.mem.here)

    def load_source(self, text: str) -> str:
        """Interpret text with a private input source, leaving pending input alone."""
        saved = self.source
        self.source = InputSource()
        try:
            return self.interpret_line(text, out=self.out)
        finally:
            self.source = saved

    def run(self) -> int:
        """Top-level driver. Returns 0 when the input is exhausted."""
        while True:
            try:
                self.execute(self.quit_xt)
            except EndOfInput:
                self.R.clear()
                self.ip = None
                logger.info("end of input (line %d), session closed", self.source.lineno)
                return 0
            except ForthError as e:
                self.emit(f"error: {e}\n")
                logger.error("%s: %s (line %d)", type(e).__name__, e, self.source.lineno)
                logger.debug("fault traceback", exc_info=True)
                self.reset()
                if not self.config.restart_on_fault:
                    raise
                logger.info("interpreter restarted")


####################################################################
# Tests

class TestBootstrap(unittest.TestCase):
    def setUp(self) -> None:
        self.vm = ForthVM()
        self.out = io.StringIO()

    def feed(self, src: str) -> str:
        return self.vm.interpret_line(src, out=self.out)

    def test_boot_words_are_immediate(self):
        for name in ("IF", "THEN", "ELSE", "BEGIN", "UNTIL", "AGAIN", "WHILE", "REPEAT", "RECURSE"):
            h = self.vm.mem.find(name)
            self.assertIsNotNone(h, name)
            self.assertTrue(self.vm.mem.flags_of(h) & WFlags.IMMEDIATE, name)
        self.assertFalse(self.vm.mem.flags_of(self.vm.mem.find("VARIABLE")) & WFlags.IMMEDIATE)

    def test_boot_leaves_clean_state(self):
        self.assertEqual(self.vm.D, [])
        self.assertEqual(self.vm.R, [])
        self.assertIs(self.vm.state, State.IMMEDIATE)

    def test_no_boot(self):
        bare = ForthVM(config=VMConfig(boot=False))
        self.assertIsNone(bare.mem.find("IF"))
        self.assertIsNotNone(bare.mem.find(":"))

    def test_begin_until_counts_to_100(self):
        self.feed(": T 0 BEGIN 1 + DUP 100 = UNTIL ;")
        self.feed("T")
        self.assertEqual(self.vm.D, [100])

    def test_loop_runs_exactly_100_passes(self):
        self.feed("VARIABLE PASSES")
        self.feed(": T 0 BEGIN 1 PASSES +! 1 + DUP 100 = UNTIL ;")
        self.feed("T DROP PASSES @")
        self.assertEqual(self.vm.D, [100])

    def test_if_then_guards_body(self):
        self.feed(": G IF 11 THEN 22 ;")
        self.feed("TRUE G")
        self.assertEqual(self.vm.D, [11, 22])
        self.vm.D.clear()
        self.feed("FALSE G 0 G")
        self.assertEqual(self.vm.D, [22, 22])

    def test_if_else_runs_one_arm(self):
        self.feed(": SIGN 0 < IF -1 ELSE 1 THEN ;")
        self.feed("-5 SIGN 5 SIGN")
        self.assertEqual(self.vm.D, [-1, 1])

    def test_nested_if(self):
        self.feed(": CLS DUP 0 < IF DROP -1 ELSE 0 = IF 0 ELSE 1 THEN THEN ;")
        self.feed("-3 CLS 0 CLS 9 CLS")
        self.assertEqual(self.vm.D, [-1, 0, 1])

    def test_if_offsets_are_relative(self):
        self.feed(": G IF 11 THEN ;")
        body = to_cfa(self.vm.mem.find("G")) + 1
        self.assertEqual(self.vm.mem[body], self.vm.zbranch_xt)
        # 0BRANCH offset skips LIT 11 and lands on EXIT
        self.assertEqual(self.vm.mem[body + 1], 3)
        self.assertEqual(self.vm.mem[body + 4], self.vm.exit_xt)

    def test_while_repeat(self):
        self.feed(": SUM ( n -- sum ) 0 SWAP BEGIN DUP 0> WHILE DUP ROT + SWAP 1- REPEAT DROP ;")
        self.feed("4 SUM")
        self.assertEqual(self.vm.D, [10])
        out = self.feed("3 SPACES 0 SPACES")
        self.assertEqual(out, "   ")

    def test_again_left_by_exit(self):
        self.feed(": FIRST>5 BEGIN 1+ DUP 5 > IF EXIT THEN AGAIN ;")
        self.feed("0 FIRST>5")
        self.assertEqual(self.vm.D, [6])

    def test_recurse(self):
        self.feed(": FACT DUP 1 > IF DUP 1- RECURSE * THEN ;")
        self.feed("5 FACT")
        self.assertEqual(self.vm.D, [120])

    def test_variable_and_constant(self):
        out = self.feed("VARIABLE X 7 X ! X ? 10 CONSTANT TEN TEN TEN +")
        self.assertEqual(out, "7 ")
        self.assertEqual(self.vm.D, [20])

    def test_literal(self):
        self.feed(": SIX [ 2 3 * ] LITERAL ;")
        self.assertEqual(self.vm.D, [])
        self.feed("SIX")
        self.assertEqual(self.vm.D, [6])

    def test_dot_and_cr(self):
        out = self.feed('1 . 2 . CR ." done" CR')
        self.assertEqual(out, "1 2 \ndone\n")

    def test_dot_requires_integer(self):
        with self.assertRaises(CellTypeError):
            self.feed("TRUE .")

    def test_immediate_marked_after_definition(self):
        self.feed(": LATE 99 ; IMMEDIATE")
        self.feed(": USE LATE ;")
        self.assertEqual(self.vm.D, [99])


class TestDriver(unittest.TestCase):
    def make(self, text: str, **cfg: Any) -> ForthVM:
        reader = StdinLineReader(io.StringIO(text))
        return ForthVM(InputSource(reader=reader), config=VMConfig(**cfg))

    def test_exhausting_input_ends_cleanly(self):
        vm = self.make("3 4 +\n: DOUBLE DUP + ;\nDOUBLE\n")
        self.assertEqual(vm.run(), 0)
        self.assertEqual(vm.D, [14])
        self.assertEqual(vm.R, [])

    def test_bye(self):
        vm = self.make("1 BYE 2\n3\n")
        self.assertEqual(vm.run(), 0)
        self.assertEqual(vm.D, [1])

    def test_restart_after_fault(self):
        vm = self.make("1 2 + DROP DROP 5\n2 3 +\n")
        self.assertEqual(vm.run(), 0)
        self.assertIn("error: data stack underflow", vm.out.getvalue())
        self.assertEqual(vm.D, [5])
        self.assertIs(vm.state, State.IMMEDIATE)

    def test_fault_propagates_without_restart(self):
        vm = self.make("DROP\n1\n", restart_on_fault=False)
        with self.assertRaises(StackUnderflow):
            vm.run()
        self.assertEqual(vm.D, [])

    def test_abort_clears_stacks_and_line(self):
        vm = self.make("1 2 ABORT 3\n4\n")
        self.assertEqual(vm.run(), 0)
        self.assertEqual(vm.D, [4])
        self.assertIn("error: ABORT", vm.out.getvalue())

    def test_abort_is_a_forth_error(self):
        self.assertTrue(issubclass(Abort, ForthError))

    def test_fault_inside_definition_keeps_it_hidden(self):
        vm = self.make(": HALF [ DROP ] 2 / ;\n1\n")
        self.assertEqual(vm.run(), 0)
        self.assertIsNone(vm.mem.find("HALF"))
        # the trailing tokens of the faulted line went with it
        self.assertEqual(vm.D, [1])

    def test_bad_emit_and_hidden_restart(self):
        vm = self.make("-1 EMIT\n4 HIDDEN\n7\n")
        self.assertEqual(vm.run(), 0)
        out = vm.out.getvalue()
        self.assertIn("error: EMIT: character code out of range: -1", out)
        self.assertIn("error: no word header at 4", out)
        self.assertEqual(vm.D, [7])

    def test_faulted_definition_stays_hidden_across_lines(self):
        vm = self.make(": HALF [ DROP ]\n2 /\n;\n1\n")
        self.assertEqual(vm.run(), 0)
        self.assertIsNone(vm.mem.find("HALF"))
        self.assertIn("error: not inside a definition", vm.out.getvalue())
        self.assertEqual(vm.D, [1])

    def test_unknown_token_keeps_going(self):
        vm = self.make("1 FROB 2\n")
        self.assertEqual(vm.run(), 0)
        self.assertEqual(vm.D, [1, 2])
        self.assertIn("unknown token: FROB", vm.out.getvalue())

    def test_load_source_keeps_pending_lines(self):
        vm = ForthVM(InputSource(["5"]))
        vm.load_source(": SQ DUP * ;")
        self.assertEqual(vm.run(), 0)
        self.assertEqual(vm.D, [5])
        self.assertIsInstance(vm.xt_of("SQ"), XT)


if __name__ == "__main__":
    if "--test" in sys.argv:
        sys.argv = [sys.argv[0]]
        unittest.main()
