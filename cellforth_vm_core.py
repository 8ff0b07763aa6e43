#!/usr/bin/env python3
# cellforth_vm_core.py
#
# Noyau CellForth (une VM par instance, aucun état global).
# - mémoire unique : en-têtes du dictionnaire + code threadé + données
# - pile de données D, pile de retour R
# - moteur de dispatch à threading indirect (trampoline explicite)
# - interpréteur externe INTERPRET / QUIT
# - ":" et ";" construits en code threadé dans la même mémoire
#
from __future__ import annotations

import io
import logging
import re
import sys
import unittest
from dataclasses import dataclass
from enum import Enum, IntFlag
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Union

from cellforth_input import EndOfInput, InputSource

logger = logging.getLogger(__name__)


# ------------------------------ Errors ---------------------------------------

class ForthError(RuntimeError): ...
class StackUnderflow(ForthError): ...
class CellTypeError(ForthError): ...
class AddressError(ForthError): ...
class Abort(ForthError): ...


class UnknownToken(ForthError):
    """Token is neither a dictionary word nor a number."""

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(f"unknown token: {token}")


# ------------------------------ Cells ----------------------------------------

@dataclass(frozen=True)
class XT:
    """Execution token: address of a word's code field."""
    addr: int

    def __repr__(self) -> str:
        return f"XT[{self.addr}]"


Cell = Union[int, str, bool, XT]


@dataclass(frozen=True)
class Native:
    """Host behaviour stored in a code field."""
    name: str
    fn: Callable[["VM"], None]

    def __repr__(self) -> str:
        return f"<native {self.name}>"


def tag_of(x: Any) -> str:
    if isinstance(x, bool): return "Boolean"
    if isinstance(x, int): return "Integer"
    if isinstance(x, str): return "Text"
    if isinstance(x, XT): return "ExecutionToken"
    return type(x).__name__


def is_cell(x: Any) -> bool:
    return isinstance(x, (int, str, XT))


def expect_int(x: Any, opname: str) -> int:
    if isinstance(x, bool) or not isinstance(x, int):
        raise CellTypeError(f"{opname} expects Integer, got {tag_of(x)} {x!r}")
    return x


def expect_text(x: Any, opname: str) -> str:
    if not isinstance(x, str):
        raise CellTypeError(f"{opname} expects Text, got {tag_of(x)} {x!r}")
    return x


def expect_xt(x: Any, opname: str) -> XT:
    if not isinstance(x, XT):
        raise CellTypeError(f"{opname} expects ExecutionToken, got {tag_of(x)} {x!r}")
    return x


def expect_flag(x: Any, opname: str) -> bool:
    """Booleans as-is, integers are true when non-zero."""
    if isinstance(x, bool):
        return x
    return expect_int(x, opname) != 0


def cells_equal(a: Cell, b: Cell) -> bool:
    return tag_of(a) == tag_of(b) and a == b


def format_cell(x: Any) -> str:
    if isinstance(x, bool): return "TRUE" if x else "FALSE"
    if isinstance(x, str): return f'"{x}"'
    return repr(x) if isinstance(x, XT) else str(x)


_NUMBER_RE = re.compile(r"[+-]?[0-9]+\Z")


def parse_number(tok: str) -> Optional[int]:
    """Decimal integer literal, or None."""
    if _NUMBER_RE.match(tok):
        return int(tok, 10)
    return None


# ------------------------------ Memory / dictionary --------------------------

class WFlags(IntFlag):
    NONE      = 0
    IMMEDIATE = 1 << 0
    HIDDEN    = 1 << 1


class State(Enum):
    IMMEDIATE = "IMMEDIATE"
    COMPILE   = "COMPILE"


# header layout: link, name, flags, code field, body...
HEADER_CELLS = 3


def to_cfa(header: int) -> int:
    return header + HEADER_CELLS


class Memory:
    """
    One growable array of cells holding headers, threaded code and data.

    Address 0 is a reserved null cell, so header addresses are never 0 and
    0 can stand for "none" on the data stack.
    """

    def __init__(self) -> None:
        self.cells: List[Any] = [0]
        self.latest: Optional[int] = None

    @property
    def here(self) -> int:
        return len(self.cells)

    def __len__(self) -> int:
        return len(self.cells)

    def _check(self, addr: Any) -> None:
        if isinstance(addr, bool) or not isinstance(addr, int) or not 0 <= addr < len(self.cells):
            raise AddressError(f"address out of range: {addr!r} (HERE={self.here})")

    def __getitem__(self, addr: int) -> Any:
        self._check(addr)
        return self.cells[addr]

    def __setitem__(self, addr: int, value: Any) -> None:
        self._check(addr)
        self.cells[addr] = value

    def fetch(self, addr: int) -> Cell:
        """Read a cell value; links read as 0 when absent, flags as integers."""
        x = self[addr]
        if x is None:
            return 0
        if isinstance(x, IntFlag):
            return int(x)
        if not is_cell(x):
            raise CellTypeError(f"@: {x!r} at {addr} is not a cell value")
        return x

    def append(self, cell: Any) -> int:
        addr = len(self.cells)
        self.cells.append(cell)
        return addr

    def resize(self, delta: int) -> None:
        if delta >= 0:
            self.cells.extend([0] * delta)
        else:
            del self.cells[max(1, len(self.cells) + delta):]

    # ---- dictionary ----
    def allocate_header(self, name: str, flags: WFlags = WFlags.NONE) -> int:
        addr = len(self.cells)
        self.cells.extend([self.latest, name.upper(), WFlags(flags)])
        # reachable only once fully written
        self.latest = addr
        return addr

    def find(self, name: str) -> Optional[int]:
        key = name.upper()
        h = self.latest
        while h is not None:
            if self[h + 1] == key and not self.flags_of(h) & WFlags.HIDDEN:
                return h
            h = self[h]
        return None

    def headers(self) -> Iterator[int]:
        """Every header, newest first, hidden ones included."""
        h = self.latest
        while h is not None:
            yield h
            h = self[h]

    def name_of(self, header: int) -> str:
        return self[header + 1]

    def flags_of(self, header: int) -> WFlags:
        x = self[header + 2]
        if isinstance(x, bool) or not isinstance(x, int):
            raise CellTypeError(f"no word header at {header}: flags cell holds {tag_of(x)} {x!r}")
        return WFlags(x & (WFlags.IMMEDIATE | WFlags.HIDDEN))

    def toggle_flags(self, header: int, mask: WFlags) -> None:
        self[header + 2] = self.flags_of(header) ^ mask

    def clear_flags(self, header: int, mask: WFlags) -> None:
        self[header + 2] = self.flags_of(header) & ~mask

    def header_of(self, xt: XT) -> Optional[int]:
        for h in self.headers():
            if to_cfa(h) == xt.addr:
                return h
        return None

    def end_of(self, header: int) -> int:
        """First address past the word's cells (next header, or HERE)."""
        nxt = [h for h in self.headers() if h > header]
        return min(nxt) if nxt else self.here


# ------------------------------ Stacks ---------------------------------------

class CellStack(list):
    def __init__(self, name: str, items: Iterable[Any] = ()) -> None:
        super().__init__(items)
        self.name = name

    def pop(self) -> Any:
        if not self:
            raise StackUnderflow(f"{self.name} stack underflow")
        return super().pop()

    def peek(self, depth: int = 0) -> Any:
        if depth >= len(self):
            raise StackUnderflow(f"{self.name} stack underflow")
        return self[-1 - depth]


class Resume(NamedTuple):
    ip: Optional[int]
    depth: int


# ------------------------------ Code fields ----------------------------------

def _docol(vm: "VM") -> None:
    vm.R.append(vm.ip)
    vm.ip = vm.cw + 1


def _dovar(vm: "VM") -> None:
    vm.D.append(vm.cw + 1)


DOCOL = Native("DOCOL", _docol)
DOVAR = Native("DOVAR", _dovar)


# ------------------------------ VM Core --------------------------------------

class VM:

    def __init__(self, source: Optional[InputSource] = None, *, out: Optional[Any] = None, trace: bool = False) -> None:
        self.D = CellStack("data")
        self.R = CellStack("return")
        self.mem = Memory()
        self.state = State.IMMEDIATE

        # runtime
        self.ip: Optional[int] = None
        self.cw: Optional[int] = None

        self.source = source if source is not None else InputSource()
        # Sortie par défaut
        self.out = out if out is not None else io.StringIO()
        self.trace = trace
        self.docs: Dict[int, str] = {}

        self._install_core()

    # --- dispatch engine ---
    def _invoke(self, xt: Any) -> None:
        if not isinstance(xt, XT):
            raise CellTypeError(f"cannot execute {tag_of(xt)} {xt!r} (ip={self.ip})")
        code = self.mem[xt.addr]
        if not isinstance(code, Native):
            raise CellTypeError(f"no code field at {xt.addr}")
        if self.trace:
            logger.debug("ip=%s rdepth=%d %s %s", self.ip, len(self.R), self.label(xt), self.D)
        self.cw = xt.addr
        code.fn(self)

    def step(self) -> None:
        """Fetch the xt at ip, advance ip, run its code field."""
        if self.ip is None:
            raise ForthError("nothing to step: no current thread")
        cell = self.mem[self.ip]
        self.ip += 1
        self._invoke(cell)

    def execute(self, xt: XT) -> None:
        """Run xt to completion from host code and come back.

        A compound word pushes the current ip on R; the loop steps until its
        EXIT brings R back to the recorded depth.
        """
        resume = Resume(self.ip, len(self.R))
        self._invoke(xt)
        while len(self.R) > resume.depth:
            self.step()
        self.ip = resume.ip

    # --- output sink ---
    def emit(self, text: str) -> None:
        """Point central de sortie texte."""
        self.out.write(text)

    def emit_int(self, n: int) -> None:
        self.emit(str(n))

    def emit_char(self, code: int) -> None:
        if not 0 <= code <= sys.maxunicode:
            raise CellTypeError(f"EMIT: character code out of range: {code}")
        self.emit(chr(code))

    # --- typed pops ---
    def pop_int(self, opname: str) -> int:
        return expect_int(self.D.pop(), opname)

    def pop_text(self, opname: str) -> str:
        return expect_text(self.D.pop(), opname)

    def pop_xt(self, opname: str) -> XT:
        return expect_xt(self.D.pop(), opname)

    def pop_flag(self, opname: str) -> bool:
        return expect_flag(self.D.pop(), opname)

    # --- dictionary helpers ---
    def xt_of(self, name: str) -> XT:
        header = self.mem.find(name)
        if header is None:
            raise UnknownToken(name)
        return XT(to_cfa(header))

    def label(self, xt: XT) -> str:
        h = self.mem.header_of(xt)
        return "<anon>" if h is None else self.mem.name_of(h)

    def words(self) -> List[str]:
        seen: List[str] = []
        for h in self.mem.headers():
            name = self.mem.name_of(h)
            if not self.mem.flags_of(h) & WFlags.HIDDEN and name not in seen:
                seen.append(name)
        return seen

    # --- compiler helpers ---
    def compile_literal(self, value: Cell) -> None:
        self.mem.append(self.lit_xt)
        self.mem.append(value)

    def _add_colon(self, name: str, body: List[Any], *, flags: WFlags = WFlags.NONE, doc: str = "") -> int:
        """Assemble a compound word; str items are word names, others literal cells."""
        h = self.mem.allocate_header(name, flags)
        self.mem.append(DOCOL)
        for item in body:
            self.mem.append(self.xt_of(item) if isinstance(item, str) else item)
        self.mem.append(self.exit_xt)
        if doc:
            self.docs[h] = doc
        return h

    # --- outer interpreter ---
    def interpret_token(self, tok: str) -> None:
        header = self.mem.find(tok)
        if header is None:
            value = parse_number(tok)
            if value is None:
                self.report_unknown(tok)
            elif self.state is State.COMPILE:
                self.compile_literal(value)
            else:
                self.D.append(value)
            return
        xt = XT(to_cfa(header))
        if self.state is State.IMMEDIATE or self.mem.flags_of(header) & WFlags.IMMEDIATE:
            self.execute(xt)
        else:
            self.mem.append(xt)

    def report_unknown(self, tok: str) -> None:
        logger.warning("unknown token %r (line %d)", tok, self.source.lineno)
        self.emit(f"{UnknownToken(tok)}\n")

    def reset(self) -> None:
        """Clear both stacks, back to immediate mode, drop the current line."""
        self.D.clear()
        self.R.clear()
        self.state = State.IMMEDIATE
        self.ip = None
        self.cw = None
        self.source.skip_line()

    def interpret_line(self, text: str, *, out: Optional[Any] = None) -> str:
        """Interpret text as pre-seeded lines and return what it printed."""
        old_out = self.out
        local_buf = io.StringIO()
        target = out if out is not None else local_buf
        start_len = len(target.getvalue()) if hasattr(target, "getvalue") else 0
        self.out = target
        self.source.feed(text)
        try:
            with self.source.detached():
                self.execute(self.quit_xt)
        except EndOfInput:
            self.R.clear()
            self.ip = None
        except ForthError:
            self.source.clear()
            self.reset()
            raise
        finally:
            self.out = old_out
        if hasattr(target, "getvalue"):
            return target.getvalue()[start_len:]
        return ""

    # --- introspection ---
    def see(self, name: str) -> str:
        h = self.mem.find(name)
        if h is None:
            raise UnknownToken(name)
        cfa = to_cfa(h)
        code = self.mem[cfa]
        imm = " IMMEDIATE" if self.mem.flags_of(h) & WFlags.IMMEDIATE else ""
        if code is DOVAR:
            return f"variable {self.mem.name_of(h)} (value={format_cell(self.mem.fetch(cfa + 1))})"
        if code is not DOCOL:
            doc = self.docs.get(h, "")
            return f"primitive {self.mem.name_of(h)} {doc}".rstrip() + imm
        parts = []
        i, end = cfa + 1, self.mem.end_of(h)
        operand_ops = (self.lit_xt, self.branch_xt, self.zbranch_xt)
        while i < end:
            cell = self.mem[i]
            if cell in operand_ops and i + 1 < end:
                operand = self.mem[i + 1]
                if cell == self.lit_xt:
                    parts.append(format_cell(operand))
                else:
                    parts.append(f"{self.label(cell)}({operand})")
                i += 2
                continue
            parts.append(self.label(cell) if isinstance(cell, XT) else format_cell(cell))
            i += 1
        # trailing EXIT is implied by ";"
        if parts and parts[-1] == "EXIT":
            parts.pop()
        return f": {self.mem.name_of(h)} {' '.join(parts)} ;{imm}"

    # --- Core primitives & compile-time words ---
    def _install_core(self) -> None:
        M = self.mem

        def addp(name, prim, *, flags=WFlags.NONE, doc=""):
            h = M.allocate_header(name, flags)
            M.append(Native(name.upper(), prim))
            if doc:
                self.docs[h] = doc
            return XT(to_cfa(h))

        # --- threading ---
        def prim_EXIT(vm):
            vm.ip = vm.R.pop()
        self.exit_xt = addp("EXIT", prim_EXIT, doc="( -- ) return from the current word")

        def prim_LIT(vm):
            vm.D.append(vm.mem[vm.ip])
            vm.ip += 1
        self.lit_xt = addp("LIT", prim_LIT, doc="( -- x ) push the next cell")

        def prim_BRANCH(vm):
            vm.ip += expect_int(vm.mem[vm.ip], "BRANCH")
        self.branch_xt = addp("BRANCH", prim_BRANCH, doc="( -- ) ip += offset")

        def prim_ZBRANCH(vm):
            if vm.pop_flag("0BRANCH"):
                vm.ip += 1
            else:
                vm.ip += expect_int(vm.mem[vm.ip], "0BRANCH")
        self.zbranch_xt = addp("0BRANCH", prim_ZBRANCH, doc="( flag -- ) branch when false/zero")

        addp("EXECUTE", lambda vm: vm._invoke(vm.pop_xt("EXECUTE")), doc="( xt -- )")

        # --- stack ---
        D = self.D
        addp("DROP", lambda vm: D.pop(), doc="( x -- )")
        addp("DUP", lambda vm: D.append(D.peek()), doc="( x -- x x )")
        def prim_SWAP(vm): b = D.pop(); a = D.pop(); D.extend([b, a])
        addp("SWAP", prim_SWAP, doc="( a b -- b a )")
        def prim_OVER(vm): D.append(D.peek(1))
        addp("OVER", prim_OVER, doc="( a b -- a b a )")
        def prim_ROT(vm): c = D.pop(); b = D.pop(); a = D.pop(); D.extend([b, c, a])
        addp("ROT", prim_ROT, doc="( a b c -- b c a )")
        def prim_NROT(vm): c = D.pop(); b = D.pop(); a = D.pop(); D.extend([c, a, b])
        addp("-ROT", prim_NROT, doc="( a b c -- c a b )")
        def prim_NIP(vm): b = D.pop(); D.pop(); D.append(b)
        addp("NIP", prim_NIP, doc="( a b -- b )")
        def prim_2DUP(vm): b = D.peek(); a = D.peek(1); D.extend([a, b])
        addp("2DUP", prim_2DUP, doc="( a b -- a b a b )")
        def prim_2DROP(vm): D.pop(); D.pop()
        addp("2DROP", prim_2DROP, doc="( a b -- )")
        def prim_2SWAP(vm):
            d = D.pop(); c = D.pop(); b = D.pop(); a = D.pop()
            D.extend([c, d, a, b])
        addp("2SWAP", prim_2SWAP, doc="( a b c d -- c d a b )")
        def prim_2OVER(vm): a = D.peek(3); b = D.peek(2); D.extend([a, b])
        addp("2OVER", prim_2OVER, doc="( a b c d -- a b c d a b )")
        def prim_QDUP(vm):
            if expect_flag(D.peek(), "?DUP"):
                D.append(D.peek())
        addp("?DUP", prim_QDUP, doc="( x -- x x | 0 )")
        addp("DEPTH", lambda vm: D.append(len(D)), doc="( -- n )")

        # --- arithmetic ---
        def binop(name, op, doc):
            def prim(vm):
                b = vm.pop_int(name)
                a = vm.pop_int(name)
                D.append(op(a, b))
            addp(name, prim, doc=doc)

        def divisor(name, b):
            if b == 0:
                raise ForthError(f"{name}: division by zero")
            return b

        binop("+", lambda a, b: a + b, "( a b -- a+b )")
        binop("-", lambda a, b: a - b, "( a b -- a-b )")
        binop("*", lambda a, b: a * b, "( a b -- a*b )")
        binop("/", lambda a, b: a // divisor("/", b), "( a b -- a/b ) floored")
        binop("MOD", lambda a, b: a % divisor("MOD", b), "( a b -- a mod b )")
        binop("MIN", min, "( a b -- min )")
        binop("MAX", max, "( a b -- max )")
        def prim_DIVMOD(vm):
            b = divisor("/MOD", vm.pop_int("/MOD")); a = vm.pop_int("/MOD")
            q, r = divmod(a, b)
            D.extend([r, q])
        addp("/MOD", prim_DIVMOD, doc="( a b -- rem quot )")
        addp("NEGATE", lambda vm: D.append(-vm.pop_int("NEGATE")), doc="( n -- -n )")
        addp("ABS", lambda vm: D.append(abs(vm.pop_int("ABS"))), doc="( n -- |n| )")
        addp("1+", lambda vm: D.append(vm.pop_int("1+") + 1), doc="( n -- n+1 )")
        addp("1-", lambda vm: D.append(vm.pop_int("1-") - 1), doc="( n -- n-1 )")

        # --- comparison (Boolean results) ---
        def cmp(name, op):
            def prim(vm):
                b = vm.pop_int(name)
                a = vm.pop_int(name)
                D.append(op(a, b))
            addp(name, prim, doc="( a b -- flag )")
        cmp("<", lambda a, b: a < b)
        cmp(">", lambda a, b: a > b)
        cmp("<=", lambda a, b: a <= b)
        cmp(">=", lambda a, b: a >= b)
        def prim_EQ(vm): b = D.pop(); a = D.pop(); D.append(cells_equal(a, b))
        def prim_NE(vm): b = D.pop(); a = D.pop(); D.append(not cells_equal(a, b))
        addp("=", prim_EQ, doc="( a b -- flag ) same tag and value")
        addp("<>", prim_NE, doc="( a b -- flag )")
        addp("0=", lambda vm: D.append(not vm.pop_flag("0=")), doc="( x -- flag )")
        addp("0<", lambda vm: D.append(vm.pop_int("0<") < 0), doc="( n -- flag )")
        addp("0>", lambda vm: D.append(vm.pop_int("0>") > 0), doc="( n -- flag )")

        # --- logic: bitwise on integers, logical on Booleans ---
        def logic(name, op):
            def prim(vm):
                b = D.pop(); a = D.pop()
                if isinstance(a, bool) and isinstance(b, bool):
                    D.append(bool(op(a, b)))
                else:
                    D.append(op(expect_int(a, name), expect_int(b, name)))
            addp(name, prim, doc="( a b -- x )")
        logic("AND", lambda a, b: a & b)
        logic("OR", lambda a, b: a | b)
        logic("XOR", lambda a, b: a ^ b)
        addp("INVERT", lambda vm: D.append(~vm.pop_int("INVERT")), doc="( n -- ~n )")
        addp("NOT", lambda vm: D.append(not vm.pop_flag("NOT")), doc="( flag -- flag' )")
        addp("TRUE", lambda vm: D.append(True), doc="( -- TRUE )")
        addp("FALSE", lambda vm: D.append(False), doc="( -- FALSE )")

        # --- memory ---
        addp("@", lambda vm: D.append(vm.mem.fetch(vm.pop_int("@"))), doc="( addr -- x )")
        def prim_STORE(vm):
            addr = vm.pop_int("!"); x = D.pop()
            vm.mem[addr] = x
        addp("!", prim_STORE, doc="( x addr -- )")
        def prim_PSTORE(vm):
            addr = vm.pop_int("+!"); n = vm.pop_int("+!")
            vm.mem[addr] = expect_int(vm.mem.fetch(addr), "+!") + n
        addp("+!", prim_PSTORE, doc="( n addr -- )")
        addp(",", lambda vm: vm.mem.append(D.pop()), doc="( x -- ) append at HERE")
        addp("HERE", lambda vm: D.append(vm.mem.here), doc="( -- addr )")
        addp("LATEST", lambda vm: D.append(vm.mem.latest or 0), doc="( -- header )")
        addp("ALLOT", lambda vm: vm.mem.resize(vm.pop_int("ALLOT")), doc="( n -- ) grow, or shrink when negative")

        # --- dictionary & compiler ---
        addp("CREATE", lambda vm: vm.mem.allocate_header(vm.pop_text("CREATE")), doc="( name -- ) bare header")
        addp("DOCOL,", lambda vm: vm.mem.append(DOCOL), doc="( -- ) append the enter-nested code field")
        addp("DOVAR,", lambda vm: vm.mem.append(DOVAR), doc="( -- ) append the push-own-address code field")
        def prim_FIND(vm):
            h = vm.mem.find(vm.pop_text("FIND"))
            D.append(0 if h is None else h)
        addp("FIND", prim_FIND, doc="( name -- header | 0 )")
        addp(">CFA", lambda vm: D.append(XT(to_cfa(vm.pop_int(">CFA")))), doc="( header -- xt )")
        addp(">BODY", lambda vm: D.append(vm.pop_xt(">BODY").addr + 1), doc="( xt -- addr )")
        def prim_HIDDEN(vm):
            vm.mem.toggle_flags(vm.pop_int("HIDDEN"), WFlags.HIDDEN)
        addp("HIDDEN", prim_HIDDEN, doc="( header -- ) toggle hidden")
        def prim_REVEAL(vm):
            vm.mem.clear_flags(vm.pop_int("REVEAL"), WFlags.HIDDEN)
        addp("REVEAL", prim_REVEAL, doc="( header -- ) make visible")
        def prim_QCOMP(vm):
            if vm.state is not State.COMPILE:
                raise ForthError("not inside a definition")
        addp("?COMP", prim_QCOMP, doc="( -- ) fault unless compiling")
        def prim_IMMEDIATE(vm):
            if vm.mem.latest is None:
                raise ForthError("IMMEDIATE: empty dictionary")
            vm.mem.toggle_flags(vm.mem.latest, WFlags.IMMEDIATE)
        addp("IMMEDIATE", prim_IMMEDIATE, flags=WFlags.IMMEDIATE, doc="( -- ) toggle immediate on latest")
        addp("[", lambda vm: setattr(vm, "state", State.IMMEDIATE), flags=WFlags.IMMEDIATE, doc="interpret state")
        addp("]", lambda vm: setattr(vm, "state", State.COMPILE), doc="compile state")
        addp("STATE", lambda vm: D.append(vm.state is State.COMPILE), doc="( -- compiling? )")
        addp("'", lambda vm: D.append(vm.xt_of(vm.source.next_token())), doc="( <name> -- xt )")
        def prim_BRACKET_TICK(vm):
            xt = vm.xt_of(vm.source.next_token())
            if vm.state is State.COMPILE:
                vm.compile_literal(xt)
            else:
                D.append(xt)
        addp("[']", prim_BRACKET_TICK, flags=WFlags.IMMEDIATE, doc="( <name> -- ) compile xt as literal")

        # --- input ---
        addp("WORD", lambda vm: D.append(vm.source.next_token()), doc="( -- text )")
        self.key_xt = addp("KEY", lambda vm: D.append(ord(vm.source.next_char())), doc="( -- char )")
        def prim_NUMBER(vm):
            tok = vm.pop_text("NUMBER")
            value = parse_number(tok)
            if value is None:
                D.extend([tok, False])
            else:
                D.extend([value, True])
        addp("NUMBER", prim_NUMBER, doc="( text -- n TRUE | text FALSE )")
        addp("CHAR", lambda vm: D.append(ord(vm.source.next_token()[0])), doc="( <word> -- char )")
        addp("INTERPRET", lambda vm: vm.interpret_token(vm.source.next_token()), doc="( -- ) one outer step")

        # --- output ---
        def prim_DOT(vm):
            vm.emit_int(vm.pop_int("."))
            vm.emit(" ")
        addp(".", prim_DOT, doc="( n -- ) print decimal")
        addp("EMIT", lambda vm: vm.emit_char(vm.pop_int("EMIT")), doc="( char -- )")
        self.tell_xt = addp("TELL", lambda vm: vm.emit(vm.pop_text("TELL")), doc="( text -- )")
        def prim_DOTS(vm):
            vm.emit(f"<{len(D)}> " + " ".join(map(format_cell, D)) + " \n")
        addp(".S", prim_DOTS, doc="( -- ) print data stack, bottom first")
        def prim_DUMP(vm):
            for i in range(len(D), 0, -1):
                vm.emit(f"{i}: {format_cell(D[i - 1])}\n")
        addp("DUMP", prim_DUMP, doc="( -- ) one line per cell, top first, 1-based")

        # --- text literals & comments (read through KEY) ---
        def read_until(vm, delim):
            chars = []
            while True:
                vm.execute(vm.key_xt)
                c = chr(vm.pop_int("KEY"))
                if c == delim:
                    return "".join(chars)
                chars.append(c)

        def prim_SQUOTE(vm):
            vm.execute(vm.key_xt)  # single delimiter after the token
            D.pop()
            text = read_until(vm, '"')
            if vm.state is State.COMPILE:
                vm.compile_literal(text)
            else:
                D.append(text)
        addp('S"', prim_SQUOTE, flags=WFlags.IMMEDIATE, doc='( <text"> -- text )')

        def prim_DOTQUOTE(vm):
            prim_SQUOTE(vm)
            if vm.state is State.COMPILE:
                vm.mem.append(vm.tell_xt)
            else:
                vm.emit(D.pop())
        addp('."', prim_DOTQUOTE, flags=WFlags.IMMEDIATE, doc='( <text"> -- ) print text')

        addp("(", lambda vm: read_until(vm, ")"), flags=WFlags.IMMEDIATE, doc="( <text)> -- ) comment")
        addp("\\", lambda vm: vm.source.skip_line(), flags=WFlags.IMMEDIATE, doc="( -- ) comment to end of line")

        # --- session ---
        def prim_ABORT(vm):
            raise Abort("ABORT")
        addp("ABORT", prim_ABORT, doc="( -- ) clear stacks and restart")
        def prim_BYE(vm):
            raise EndOfInput()
        addp("BYE", prim_BYE, doc="( -- ) end the session")

        # --- compound words built from the primitives above ---
        self._add_colon(":", ["WORD", "CREATE", "DOCOL,", "LATEST", "HIDDEN", "]"], doc="( <name> -- ) start colon definition")
        self._add_colon(";", ["?COMP", "LIT", self.exit_xt, ",", "LATEST", "REVEAL", "["], flags=WFlags.IMMEDIATE, doc="end colon definition")
        self.quit_xt = XT(to_cfa(self._add_colon("QUIT", ["INTERPRET", "BRANCH", -2], doc="( -- ) outer interpreter loop")))


####################################################################
# Tests

class TestCells(unittest.TestCase):
    def test_tags(self):
        self.assertEqual(tag_of(True), "Boolean")
        self.assertEqual(tag_of(3), "Integer")
        self.assertEqual(tag_of("x"), "Text")
        self.assertEqual(tag_of(XT(4)), "ExecutionToken")

    def test_expect_int_rejects_bool(self):
        with self.assertRaises(CellTypeError):
            expect_int(True, "+")

    def test_cells_equal_compares_tags(self):
        self.assertFalse(cells_equal(1, True))
        self.assertTrue(cells_equal("a", "a"))

    def test_parse_number(self):
        self.assertEqual(parse_number("-12"), -12)
        self.assertEqual(parse_number("+7"), 7)
        self.assertIsNone(parse_number("1_000"))
        self.assertIsNone(parse_number("12x"))
        self.assertIsNone(parse_number("-"))


class TestMemory(unittest.TestCase):
    def setUp(self) -> None:
        self.mem = Memory()

    def test_append_returns_address_and_grows_here(self):
        here = self.mem.here
        self.assertEqual(self.mem.append(42), here)
        self.assertEqual(self.mem.here, here + 1)

    def test_find_newest_first_case_insensitive(self):
        old = self.mem.allocate_header("foo")
        new = self.mem.allocate_header("FOO")
        self.assertEqual(self.mem.find("Foo"), new)
        self.assertNotEqual(old, new)
        self.mem.toggle_flags(new, WFlags.HIDDEN)
        self.assertEqual(self.mem.find("foo"), old)
        self.assertIsNone(self.mem.find("bar"))

    def test_resize_grows_and_truncates(self):
        here = self.mem.here
        self.mem.resize(3)
        self.assertEqual(self.mem.cells[here:], [0, 0, 0])
        self.mem.resize(-2)
        self.assertEqual(self.mem.here, here + 1)

    def test_bounds_checked(self):
        with self.assertRaises(AddressError):
            self.mem[self.mem.here]
        with self.assertRaises(AddressError):
            self.mem[-1] = 3

    def test_fetch_link_and_flags(self):
        h = self.mem.allocate_header("x", WFlags.IMMEDIATE)
        self.assertEqual(self.mem.fetch(h), 0)
        self.assertEqual(self.mem.fetch(h + 2), 1)


class TestStacks(unittest.TestCase):
    def test_pop_empty_underflows(self):
        s = CellStack("data")
        with self.assertRaises(StackUnderflow):
            s.pop()
        with self.assertRaises(StackUnderflow):
            s.peek()


class TestForthVMCore(unittest.TestCase):
    def setUp(self) -> None:
        self.vm = VM()
        self.out = io.StringIO()

    def feed(self, src: str) -> str:
        return self.vm.interpret_line(src, out=self.out)

    def test_arith_operand_order(self):
        self.feed("3 4 + 10 3 -")
        self.assertEqual(self.vm.D, [7, 7])
        self.feed("DROP DROP 7 2 /MOD 7 2 MOD")
        self.assertEqual(self.vm.D, [1, 3, 1])

    def test_stack_words(self):
        self.feed("5 DUP")
        self.assertEqual(self.vm.D, [5, 5])
        self.vm.D.clear()
        self.feed("1 2 SWAP")
        self.assertEqual(self.vm.D, [2, 1])
        self.vm.D.clear()
        self.feed("1 2 3 ROT")
        self.assertEqual(self.vm.D, [2, 3, 1])
        self.vm.D.clear()
        self.feed("1 2 OVER 2DUP NIP")
        self.assertEqual(self.vm.D, [1, 2, 1, 1])

    def test_comparisons_push_booleans(self):
        self.feed("1 2 < 2 2 = 3 0= 0 0=")
        self.assertEqual(self.vm.D, [True, True, False, True])

    def test_colon_definition(self):
        out = self.feed(": DOUBLE DUP + ; 5 DOUBLE .")
        self.assertEqual(out.strip(), "10")
        self.assertIs(self.vm.state, State.IMMEDIATE)

    def test_shadowing_find_returns_newest(self):
        self.feed(": SQ DUP * ; : USE-SQ SQ ;")
        first = self.vm.mem.find("SQ")
        self.feed(": SQ DROP 0 ;")
        second = self.vm.mem.find("sq")
        self.assertGreater(second, first)
        self.feed('S" SQ" FIND')
        self.assertEqual(self.vm.D.pop(), second)
        # compiled references keep the old definition
        self.feed("3 USE-SQ 3 SQ")
        self.assertEqual(self.vm.D, [9, 0])

    def test_find_missing_pushes_zero(self):
        self.feed('S" NOPE" FIND')
        self.assertEqual(self.vm.D, [0])

    def test_lookup_cfa_execute_roundtrip(self):
        self.feed(": DOUBLE DUP + ;")
        self.feed('5 DOUBLE 5 S" double" FIND >CFA EXECUTE')
        self.assertEqual(self.vm.D, [10, 10])
        self.feed("' DOUBLE 6 SWAP EXECUTE")
        self.assertEqual(self.vm.D[-1], 12)

    def test_immediate_word_runs_while_compiling(self):
        self.feed(": MARK IMMEDIATE 42 ;")
        self.feed(": USE MARK ;")
        # MARK ran during the compilation of USE
        self.assertEqual(self.vm.D, [42])
        self.vm.D.clear()
        self.feed("USE")
        self.assertEqual(self.vm.D, [])

    def test_non_immediate_word_is_compiled(self):
        self.feed(": FORTY 40 ; : LATER FORTY 2 + ;")
        self.assertEqual(self.vm.D, [])
        body = to_cfa(self.vm.mem.find("LATER")) + 1
        self.assertEqual(self.vm.mem[body], self.vm.xt_of("FORTY"))
        self.feed("LATER")
        self.assertEqual(self.vm.D, [42])

    def test_literal_compiled_as_lit_pair(self):
        self.feed(": SEVEN 7 ;")
        body = to_cfa(self.vm.mem.find("SEVEN")) + 1
        self.assertEqual(self.vm.mem[body], self.vm.lit_xt)
        self.assertEqual(self.vm.mem[body + 1], 7)
        self.assertEqual(self.vm.mem[body + 2], self.vm.exit_xt)

    def test_unknown_token_is_reported_and_state_untouched(self):
        self.feed("1 2")
        here = self.vm.mem.here
        out = self.feed("FROB 3")
        self.assertIn("unknown token: FROB", out)
        self.assertEqual(self.vm.D, [1, 2, 3])
        self.assertEqual(self.vm.mem.here, here)

    def test_underflow_raises_and_resets(self):
        with self.assertRaises(StackUnderflow):
            self.feed("1 + 99")
        self.assertEqual(self.vm.D, [])
        self.assertEqual(self.vm.R, [])
        # the rest of the fed text was dropped
        self.assertEqual(self.feed("5"), "")
        self.assertEqual(self.vm.D, [5])

    def test_type_fault(self):
        with self.assertRaises(CellTypeError):
            self.feed('S" a" 1 +')

    def test_faulting_definition_stays_hidden(self):
        with self.assertRaises(StackUnderflow):
            self.feed(": BROKEN [ DROP ] ;")
        self.assertIsNone(self.vm.mem.find("BROKEN"))

    def test_stray_semicolon_faults_and_keeps_word_visible(self):
        with self.assertRaises(ForthError):
            self.feed(": SQ DUP * ; ;")
        self.feed("3 SQ")
        self.assertEqual(self.vm.D, [9])
        with self.assertRaises(ForthError):
            self.feed("; 4 SQ")
        self.assertIsNotNone(self.vm.mem.find("SQ"))

    def test_faulted_multiline_definition_not_revealed_later(self):
        with self.assertRaises(StackUnderflow):
            self.feed(": HALF [ DROP ]")
        with self.assertRaises(ForthError):
            self.feed(";")
        self.assertIsNone(self.vm.mem.find("HALF"))
        self.assertIs(self.vm.state, State.IMMEDIATE)

    def test_hidden_on_non_header_is_a_fault(self):
        lit_header = self.vm.mem.find("LIT")
        with self.assertRaises(CellTypeError):
            self.feed(f"{lit_header + 1} HIDDEN")
        self.assertIsNotNone(self.vm.mem.find("LIT"))

    def test_emit_out_of_range(self):
        with self.assertRaises(CellTypeError):
            self.feed("-1 EMIT")

    def test_squote_preserves_order(self):
        self.feed('S" hello, world"')
        self.assertEqual(self.vm.D, ["hello, world"])
        out = self.feed(': GREET ." abc def" ; GREET')
        self.assertEqual(out, "abc def")

    def test_comments(self):
        self.feed("1 ( 2 3 ) 4 \\ 5 6")
        self.assertEqual(self.vm.D, [1, 4])

    def test_multiline_definition(self):
        self.feed(": ADD3\n  + +\n;")
        self.feed("1 2 3 ADD3")
        self.assertEqual(self.vm.D, [6])

    def test_variable_by_hand(self):
        self.feed('S" V" CREATE DOVAR, 0 , 5 V ! V @ V @ 1+ V ! V @')
        self.assertEqual(self.vm.D, [5, 6])

    def test_allot_and_comma(self):
        out = self.feed("HERE 3 ALLOT HERE SWAP - . 42 , HERE 1- @ . 5 HERE 1- +! HERE 1- @ .")
        self.assertEqual(out.split(), ["3", "42", "47"])
        here = self.vm.mem.here
        self.feed("-2 ALLOT")
        self.assertEqual(self.vm.mem.here, here - 2)

    def test_execute_runs_compound_from_host(self):
        self.feed(": INC 1 + ;")
        self.vm.D.append(1)
        self.vm.execute(self.vm.xt_of("INC"))
        self.assertEqual(self.vm.D, [2])
        self.assertEqual(self.vm.R, [])
        self.assertIsNone(self.vm.ip)

    def test_execute_inside_thread_resumes_caller(self):
        # INTERPRET runs DOUBLE through execute() from within RUN-IT's body
        self.feed(": DOUBLE DUP + ; : RUN-IT INTERPRET 1 + ;")
        self.feed("5 RUN-IT DOUBLE 100")
        self.assertEqual(self.vm.D, [11, 100])
        self.assertEqual(self.vm.R, [])

    def test_dump_layout(self):
        out = self.feed('1 S" x" DUMP')
        self.assertEqual(out, '2: "x"\n1: 1\n')
        self.assertEqual(self.feed(".S"), '<2> 1 "x" \n')

    def test_emit_and_tell(self):
        out = self.feed('65 EMIT S" bc" TELL CHAR z EMIT')
        self.assertEqual(out, "Abcz")

    def test_see_decompiles(self):
        self.feed(": SQ DUP * 2 + ;")
        self.assertEqual(self.vm.see("sq"), ": SQ DUP * 2 + ;")
        self.assertTrue(self.vm.see("DUP").startswith("primitive DUP"))

    def test_independent_instances(self):
        other = VM()
        self.feed(": ONLY-HERE 1 ;")
        self.assertIsNone(other.mem.find("ONLY-HERE"))


if __name__ == "__main__":
    if "--test" in sys.argv:
        sys.argv = [sys.argv[0]]
        unittest.main()
