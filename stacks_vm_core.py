#!/usr/bin/env python3
# stacks_vm_core.py
#
# Noyau de la VM Stacks (indirect-threaded, façon Forth classique).
# - heap linéaire append-only de Cell, adressé par index
# - pile de données D et pile de retour R
# - table de primitives indexée + dictionnaire des mots
# - interpréteur interne itératif : next() renvoie un Outcome, jamais de récursion
# - sortie texte centralisée via Machine.emit(text)
#
from __future__ import annotations
import io
import re
from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from stacks_cell import Cell, CellTag


# ------------------------------ Faults ---------------------------------------

class FaultKind(Enum):
    TYPE_MISMATCH     = "type mismatch"
    STACK_UNDERFLOW   = "stack underflow"
    ADDRESS_VIOLATION = "address violation"
    UNRESOLVED_SYMBOL = "unresolved symbol"
    ARITHMETIC        = "arithmetic"


class MachineError(RuntimeError):
    """Any condition that is fatal to the current run. ``kind`` is set by subclasses."""
    kind: FaultKind

class TypeMismatchError(MachineError):
    kind = FaultKind.TYPE_MISMATCH

class StackUnderflowError(MachineError):
    kind = FaultKind.STACK_UNDERFLOW

class AddressError(MachineError):
    kind = FaultKind.ADDRESS_VIOLATION

class UnresolvedSymbolError(MachineError):
    kind = FaultKind.UNRESOLVED_SYMBOL

class ArithmeticFault(MachineError):
    kind = FaultKind.ARITHMETIC

class DictError(RuntimeError): ...


class Outcome(Enum):
    CONTINUE = "CONTINUE"
    HALT     = "HALT"
    FAULT    = "FAULT"


def trunc_div(a: int, b: int) -> int:
    """Integer division truncating toward zero (Python's // floors)."""
    if b == 0:
        raise ArithmeticFault("division by zero")
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


# ------------------------------ Primitives / Dictionary ----------------------

PrimFn = Callable[["Machine"], Optional[Outcome]]

@dataclass
class Primitive:
    name: str
    num: int
    fn: PrimFn
    doc: str = ""

    def execute(self, vm: "Machine") -> Outcome:
        res = self.fn(vm)
        return res if isinstance(res, Outcome) else Outcome.CONTINUE


class WordsDictionary:
    """
    Two name spaces:
      - primitives : name -> index in the primitive table (frozen after seal())
      - words      : name -> heap entry address (latest definition wins)
    """
    def __init__(self) -> None:
        self._prims: List[Primitive] = []
        self._prim_by_name: Dict[str, int] = {}
        self._words: Dict[str, int] = {}
        self._history: List[Tuple[str, int]] = []   # (name, entry) in creation order
        self._sealed: bool = False

    # primitives
    def add_primitive(self, name: str, fn: PrimFn, *, doc: str = "") -> Primitive:
        if self._sealed: raise DictError("primitive table is sealed")
        if name in self._prim_by_name: raise DictError(f"primitive defined twice: {name}")
        p = Primitive(name, len(self._prims), fn, doc)
        self._prims.append(p)
        self._prim_by_name[name] = p.num
        return p
    def seal(self) -> None: self._sealed = True
    def primitive(self, num: int) -> Primitive:
        if not (0 <= num < len(self._prims)):
            raise AddressError(f"no primitive #{num}")
        return self._prims[num]
    def find_primitive(self, name: str) -> Optional[int]: return self._prim_by_name.get(name)
    def primitive_names(self) -> List[str]: return [p.name for p in self._prims]

    # words
    def set_word(self, name: str, entry: int) -> None:
        self._words[name] = entry
        self._history.append((name, entry))
    def forget_latest(self, name: str, previous: Optional[int]) -> None:
        """Undo the last set_word(name, ...) (registration that failed half-way)."""
        if self._history and self._history[-1][0] == name:
            self._history.pop()
        if previous is None:
            self._words.pop(name, None)
        else:
            self._words[name] = previous
    def find_word(self, name: str) -> Optional[int]: return self._words.get(name)
    def word_names(self) -> List[str]: return list(self._words)
    def entries(self) -> List[int]: return sorted({e for _, e in self._history})
    def name_for_address(self, address: int) -> Optional[str]:
        for name, entry in reversed(self._history):
            if entry == address and self._words.get(name) == entry:
                return name
        return None


# ------------------------------ VM Core --------------------------------------

# Primitive table order; indices are stable for the lifetime of the process.
PRIMITIVE_NAMES = (
    ";", "bye", "hello",
    "dup", "drop", "swap", "nip", "tuck", "over", "rot", "negrot",
    ">r", "r>", "r@",
    "+", "-", "*", "/", "*/",
    ".", ".s", "@", "!", "words",
    "0<", "and", "or", "xor",
)

_INT_TOKEN = re.compile(r"[+-]?[0-9]+")

# REPL dot-commands (single source of truth)
DOT_CMDS = {".dict", ".fault", ".heap", ".help", ".rstack", ".see", ".stack"}


class Machine:

    def __init__(self, *, out: Optional[Any] = None) -> None:
        self.D: List[Cell] = []
        self.R: List[Cell] = []
        self.heap: List[Cell] = []
        self.dict = WordsDictionary()
        # Sortie par défaut : tampon mémoire, redirigeable par execute_word(out=...)
        self.out = out if out is not None else io.StringIO()

        # inner interpreter state
        self.instruction_pointer: int = 0
        self.exit_flag: bool = False
        self.error_flag: bool = False
        self.fault: Optional[MachineError] = None

        self._install_core()
        self.dict.seal()
        assert tuple(self.dict.primitive_names()) == PRIMITIVE_NAMES, "primitive table out of order"
        self._exit_num = self.dict.find_primitive(";")

    # --- stacks ---
    def push(self, cell: Cell) -> None: self.D.append(cell)
    def rpush(self, cell: Cell) -> None: self.R.append(cell)

    def need(self, depth: int, opname: str) -> None:
        if len(self.D) < depth:
            raise StackUnderflowError(f"{opname}: needs {depth} cell(s), data stack has {len(self.D)}")

    def pop(self, opname: str = "pop") -> Cell:
        self.need(1, opname)
        return self.D.pop()

    def top(self, opname: str = "top") -> Cell:
        self.need(1, opname)
        return self.D[-1]

    def rpop(self, opname: str = "rpop") -> Cell:
        if not self.R:
            raise StackUnderflowError(f"{opname}: return stack empty")
        return self.R.pop()

    def rtop(self, opname: str = "rtop") -> Cell:
        if not self.R:
            raise StackUnderflowError(f"{opname}: return stack empty")
        return self.R[-1]

    def pop_literal(self, opname: str) -> int:
        c = self.pop(opname)
        return expect_literal(c, opname)

    # --- heap ---
    def here(self) -> int:
        return len(self.heap)

    def _check_address(self, index: Any, opname: str) -> int:
        if not isinstance(index, int) or not (0 <= index < len(self.heap)):
            raise AddressError(f"{opname}: address {index!r} outside heap [0, {len(self.heap)})")
        return index

    def heap_fetch(self, index: int, opname: str = "fetch") -> Cell:
        return self.heap[self._check_address(index, opname)]

    def heap_store(self, index: int, cell: Cell, opname: str = "store") -> None:
        self.heap[self._check_address(index, opname)] = cell

    def append(self, cell: Cell) -> int:
        self.heap.append(cell)
        return len(self.heap) - 1

    # --- dictionary / compiler ---
    def create_name(self, name: str) -> int:
        """Bind ``name`` to the address the next append will occupy."""
        entry = self.here()
        self.dict.set_word(name, entry)
        return entry

    def cell_for_name(self, name: str) -> Cell:
        # primitives > words > integer literals
        num = self.dict.find_primitive(name)
        if num is not None:
            return Cell.primitive(num)
        entry = self.dict.find_word(name)
        if entry is not None:
            return Cell.thread(entry)
        # entiers décimaux ASCII uniquement, signe optionnel
        if isinstance(name, str) and _INT_TOKEN.fullmatch(name):
            return Cell.literal(int(name, 10))
        raise UnresolvedSymbolError(f"unknown token: {name!r}")

    def heap_index_for_name(self, name: str) -> int:
        entry = self.dict.find_word(name)
        if entry is None:
            raise UnresolvedSymbolError(f"unknown word: {name!r}")
        return entry

    def register_word(self, name: str, body: Iterable[str]) -> int:
        """
        Compile ``body`` (token list, usually ending with ";") as word ``name``.

        Layout: [entry] Branch(entry+1) then one cell per token. The name is
        visible inside its own body. If a token cannot be resolved, nothing is
        appended and the dictionary is left as it was.
        """
        previous = self.dict.find_word(name)
        entry = self.create_name(name)
        try:
            cells = [self.cell_for_name(tok) for tok in body]
        except UnresolvedSymbolError:
            self.dict.forget_latest(name, previous)
            raise
        self.append(Cell.branch(entry + 1))
        self.heap.extend(cells)
        return entry

    def register_constant(self, name: str, value: int) -> int:
        # [entry] Constant(value) ; exit
        entry = self.create_name(name)
        self.append(Cell.constant(value))
        self.append(Cell.primitive(self._exit_num))
        return entry

    def register_variable(self, name: str, initial_value: int = 0) -> int:
        # [entry] Variable(entry+2) ; exit ; [entry+2] backing cell
        entry = self.create_name(name)
        self.append(Cell.variable(entry + 2))
        self.append(Cell.primitive(self._exit_num))
        self.append(Cell.literal(initial_value))
        return entry

    # --- inner interpreter ---
    def next(self) -> Outcome:
        """Fetch the cell at the instruction pointer, advance, dispatch it."""
        try:
            cell = self.heap_fetch(self.instruction_pointer, "next")
            self.instruction_pointer += 1
            outcome = self._dispatch(cell)
        except MachineError as e:
            self.error(e)
            return Outcome.FAULT
        if outcome is Outcome.HALT:
            self.exit_flag = True
        return outcome

    def _dispatch(self, cell: Cell) -> Outcome:
        tag = cell.tag
        if tag is CellTag.THREAD:
            self.rpush(Cell.thread(self.instruction_pointer))
            self.instruction_pointer = cell.value
        elif tag is CellTag.PRIMITIVE:
            return self.dict.primitive(cell.value).execute(self)
        elif tag is CellTag.BRANCH:
            self.instruction_pointer = cell.value
        elif tag is CellTag.ZERO_BRANCH:
            if self.pop_literal("ZeroBranch") == 0:
                self.instruction_pointer = cell.value
        elif tag is CellTag.LITERAL:
            self.push(cell)
        elif tag is CellTag.CONSTANT:
            self.push(Cell.literal(cell.value))
        elif tag is CellTag.VARIABLE:
            self.push(Cell.literal(cell.value))
        else:
            raise TypeMismatchError(f"cannot dispatch {cell!r}")
        return Outcome.CONTINUE

    def main_loop(self) -> None:
        while not self.exit_flag:
            self.next()

    def enter(self, word: str) -> None:
        """Reset the run flags and point the instruction pointer at ``word``."""
        self.exit_flag = False
        self.error_flag = False
        self.fault = None
        self.instruction_pointer = self.heap_index_for_name(word)

    def step(self) -> bool:
        """Execute exactly one cell. Returns False once the machine has halted."""
        if self.exit_flag:
            return False
        return self.next() is Outcome.CONTINUE

    def execute_word(self, word: str, *, out: Optional[Any] = None) -> bool:
        """Run ``word`` until bye or a fault. True when no fault occurred."""
        old_out = self.out
        if out is not None:
            self.out = out
        try:
            try:
                self.enter(word)
            except UnresolvedSymbolError as e:
                self.error(e)
                return False
            self.main_loop()
            return not self.error_flag
        finally:
            self.out = old_out

    def error(self, exc: Optional[MachineError] = None) -> None:
        """Total recovery: both stacks emptied, run halted, fault recorded."""
        self.D.clear()
        self.R.clear()
        self.exit_flag = True
        self.error_flag = True
        self.fault = exc
        if exc is None:
            self.emit("oops.\n")
        else:
            self.emit(f"oops. {exc.kind.value}: {exc}\n")

    def emit(self, text: str) -> None:
        """Point central de sortie texte."""
        self.out.write(text)

    # --- Core primitives ---
    def _install_core(self) -> None:
        W = self.dict
        addp = W.add_primitive

        # Exit / halt / hello
        def prim_EXIT(vm):
            ret = vm.rpop(";")
            if not ret.is_thread():
                raise TypeMismatchError(f";: expected Thread on return stack, got {ret!r}")
            vm.instruction_pointer = ret.value
        addp(";", prim_EXIT, doc="( -- ) (R: ret -- ) return to caller")
        addp("bye", lambda vm: Outcome.HALT, doc="( -- ) halt the main loop")
        addp("hello", lambda vm: vm.emit("hello world!\n"), doc="( -- ) print greeting")

        # Stack basics
        addp("dup", lambda vm: vm.push(vm.top("dup")), doc="( x -- x x )")
        def prim_DROP(vm): vm.pop("drop")
        addp("drop", prim_DROP, doc="( x -- )")
        def prim_SWAP(vm):
            vm.need(2, "swap"); D = vm.D
            D[-1], D[-2] = D[-2], D[-1]
        addp("swap", prim_SWAP, doc="( a b -- b a )")
        def prim_NIP(vm):
            vm.need(2, "nip"); del vm.D[-2]
        addp("nip", prim_NIP, doc="( a b -- b )")
        def prim_TUCK(vm):
            vm.need(2, "tuck"); vm.D.insert(-2, vm.D[-1])
        addp("tuck", prim_TUCK, doc="( a b -- b a b )")
        def prim_OVER(vm):
            vm.need(2, "over"); vm.push(vm.D[-2])
        addp("over", prim_OVER, doc="( a b -- a b a )")
        def prim_ROT(vm):
            vm.need(3, "rot"); vm.D.append(vm.D.pop(-3))
        addp("rot", prim_ROT, doc="( a b c -- b c a )")
        def prim_NEGROT(vm):
            vm.need(3, "negrot"); vm.D.insert(-2, vm.D.pop())
        addp("negrot", prim_NEGROT, doc="( a b c -- c a b )")

        # Return stack
        addp(">r", lambda vm: vm.rpush(vm.pop(">r")), doc="( x -- ) (R: -- x )")
        addp("r>", lambda vm: vm.push(vm.rpop("r>")), doc="( -- x ) (R: x -- )")
        addp("r@", lambda vm: vm.push(vm.rtop("r@")), doc="( -- x ) (R: x -- x )")

        # Arithmetic: pop b, pop a, both Literal, push a op b
        def binop(vm, opname, action):
            b = vm.pop(opname)
            a = vm.pop(opname)
            av = expect_literal(a, opname)
            bv = expect_literal(b, opname)
            vm.push(Cell.literal(action(av, bv)))
        addp("+", lambda vm: binop(vm, "+", lambda a, b: a + b), doc="( a b -- a+b )")
        addp("-", lambda vm: binop(vm, "-", lambda a, b: a - b), doc="( a b -- a-b )")
        addp("*", lambda vm: binop(vm, "*", lambda a, b: a * b), doc="( a b -- a*b )")
        addp("/", lambda vm: binop(vm, "/", trunc_div), doc="( a b -- a/b ) truncates toward zero")
        def prim_STARSLASH(vm):
            c = vm.pop("*/")
            binop(vm, "*/", lambda a, b: a * b)
            vm.push(c)
            binop(vm, "*/", trunc_div)
        addp("*/", prim_STARSLASH, doc="( a b c -- a*b/c )")

        # Output & debug
        addp(".", lambda vm: vm.emit(f"{vm.pop('.').describe()} "), doc="( x -- ) print")
        addp(".s", lambda vm: vm.emit("".join(f"{c.describe()} " for c in vm.D)), doc="( -- ) print data stack")

        # Memory
        def prim_FETCH(vm):
            addr = vm.pop_literal("@")
            vm.push(vm.heap_fetch(addr, "@"))
        def prim_STORE(vm):
            addr = vm.pop_literal("!")
            val = vm.pop("!")
            vm.heap_store(addr, val, "!")
        addp("@", prim_FETCH, doc="( addr -- cell )")
        addp("!", prim_STORE, doc="( cell addr -- )")

        def prim_WORDS(vm):
            names = vm.dict.primitive_names() + vm.dict.word_names()
            vm.emit("".join(f"{n} " for n in names))
        addp("words", prim_WORDS, doc="( -- ) list primitives then words")

        # Logic
        addp("0<", lambda vm: vm.push(Cell.literal(1 if vm.pop_literal("0<") > 0 else 0)),
             doc="( n -- flag ) 1 when n is positive, else 0")
        addp("and", lambda vm: binop(vm, "and", lambda a, b: a & b), doc="( a b -- a&b )")
        addp("or",  lambda vm: binop(vm, "or",  lambda a, b: a | b), doc="( a b -- a|b )")
        addp("xor", lambda vm: binop(vm, "xor", lambda a, b: a ^ b), doc="( a b -- a^b )")

    # --- Introspection ---
    def name_of(self, cell: Cell) -> str:
        """Source-like rendering of a compiled cell."""
        if cell.tag is CellTag.PRIMITIVE and 0 <= cell.value < len(self.dict.primitive_names()):
            return self.dict.primitive_names()[cell.value]
        if cell.tag is CellTag.THREAD:
            return self.dict.name_for_address(cell.value) or repr(cell)
        return cell.describe()

    def word_extent(self, entry: int) -> int:
        """End (exclusive) of the heap region that starts at ``entry``."""
        entries = self.dict.entries()
        i = bisect_right(entries, entry)
        return entries[i] if i < len(entries) else len(self.heap)

    def disasm(self, name: str) -> str:
        entry = self.heap_index_for_name(name)
        if entry >= len(self.heap):
            return f"{name}  (empty)"
        head = self.heap[entry]
        if head.tag is CellTag.CONSTANT:
            return f"constant {name} (={head.value})"
        if head.tag is CellTag.VARIABLE:
            try:
                cur = self.heap_fetch(head.value).describe()
            except AddressError:
                cur = "?"
            return f"variable {name} (@{head.value} = {cur})"
        start = entry + 1 if head == Cell.branch(entry + 1) else entry
        body = " ".join(self.name_of(c) for c in self.heap[start:self.word_extent(entry)])
        return f": {name}  {body}"

    # --- Dot-commands via dispatch table ---
    def _dotcmd_dispatch(self):
            return {
                ".help": self._dot_help,
                ".stack": self._dot_stack,
                ".rstack": self._dot_rstack,
                ".dict": self._dot_dict,
                ".see": self._dot_see,
                ".heap": self._dot_heap,
                ".fault": self._dot_fault,
            }

    def _dot_help(self, args, out):
            out.write(".stack .rstack .dict [.see <w>] [.heap <n>] .fault\n")

    def _dot_stack(self, args, out):
            out.write(f"<{len(self.D)}> " + " ".join(c.describe() for c in self.D) + " \n")

    def _dot_rstack(self, args, out):
            out.write(f"<{len(self.R)}> " + " ".join(c.describe() for c in self.R) + " \n")

    def _dot_dict(self, args, out):
            filt = args[0] if args else None
            prims = self.dict.primitive_names()
            words = self.dict.word_names()
            if filt:
                prims = [n for n in prims if filt.lower() in n.lower()]
                words = [n for n in words if filt.lower() in n.lower()]
            out.write("primitives: " + " ".join(prims) + "\n")
            out.write("words: " + " ".join(sorted(words)) + "\n")

    def _dot_see(self, args, out):
            if not args:
                out.write("unknown: \n"); return
            try:
                out.write(self.disasm(args[0]) + "\n")
            except UnresolvedSymbolError:
                out.write(f"unknown: {args[0]}\n")

    def _dot_heap(self, args, out):
            try:
                n = int(args[0]) if args else 32
            except ValueError:
                out.write(f"bad arg: {args[0]}\n")
                return
            out.write("HEAP: " + " ".join(f"{i}:{c!r}" for i, c in enumerate(self.heap[:n])) + "\n")

    def _dot_fault(self, args, out):
            if self.fault is None:
                out.write("fault: none\n")
            else:
                out.write(f"fault: {self.fault.kind.name} {self.fault}\n")

    def handle_dot_command(self, line: str, out):
            parts = line.split()
            cmd, args = parts[0], parts[1:]
            h = self._dotcmd_dispatch().get(cmd)
            if not h:
                out.write(f"unknown dot-cmd: {cmd}\n")
                return
            h(args, out)


def expect_literal(cell: Cell, opname: str) -> int:
    if not isinstance(cell, Cell) or not cell.is_literal():
        raise TypeMismatchError(f"{opname}: expected Literal, got {cell!r}")
    return cell.value
