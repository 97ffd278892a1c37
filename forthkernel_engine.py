#!/usr/bin/env python3
# forthkernel_engine.py
#
# Moteur Forth de référence embarqué par forthkernel :
# - dictionnaire de mots (primitives Python + définitions threadées)
# - interpréteur / compilateur texte, STATE persistant d'un appel à l'autre
# - contrat vu par le kernel : load / bind / interpret / pop / push / on_emit
#
# Ce n'est PAS un Forth-2012 complet : seulement le noyau nécessaire pour
# faire tourner le kernel (et ses tests) sans moteur externe.

from __future__ import annotations

import sys
import unittest
from dataclasses import dataclass
from enum import Enum, IntEnum, IntFlag
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple


# ============================================================
# Codes de retour de interpret()
# ============================================================

class ErrorCode(IntEnum):
    OK = 0
    UNKNOWN = 1
    ABORT = -1
    QUIT = -56
    END_OF_INPUT = -0x101
    BYE = -0x102


def is_success(code: int) -> bool:
    return code == ErrorCode.OK


class ForthError(RuntimeError):
    """
    Erreur levée par un mot pendant l'interprétation.
    interpret() la convertit en ErrorCode (ABORT par défaut).
    """

    code: ErrorCode = ErrorCode.ABORT

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class UndefinedWord(ForthError): ...
class StackUnderflow(ForthError): ...


class EndOfInput(ForthError):
    code = ErrorCode.END_OF_INPUT


class ForthQuit(ForthError):
    code = ErrorCode.QUIT


class ForthBye(ForthError):
    code = ErrorCode.BYE


# ============================================================
# Mots & dictionnaire
# ============================================================

class CodeClass(Enum):
    PRIMITIVE = "PRIMITIVE"
    DOCOL = "DOCOL"
    DOCON = "DOCON"


class WFlags(IntFlag):
    NONE         = 0
    IMMEDIATE    = 1 << 0
    COMPILE_ONLY = 1 << 1
    SMUDGE       = 1 << 2
    HIDDEN       = 1 << 3


Token = int

# tokens de contrôle réservés (< token_start du dictionnaire)
LIT     = 0x10
BRANCH  = 0x11
ZBRANCH = 0x12
EXIT    = 0x13
CONTROL_TOKENS = (LIT, BRANCH, ZBRANCH, EXIT)


@dataclass
class Word:
    name: str
    code_class: CodeClass
    token: Token
    flags: WFlags = WFlags.NONE
    pfa: Any = None
    prim: Optional[Callable[[Any], None]] = None
    doc: str = ""

    def __hash__(self) -> int: return hash(self.token)
    def __eq__(self, other: object) -> bool: return isinstance(other, Word) and self.token == other.token
    def is_immediate(self) -> bool: return bool(self.flags & WFlags.IMMEDIATE)
    def is_compile_only(self) -> bool: return bool(self.flags & WFlags.COMPILE_ONLY)
    def is_visible(self) -> bool: return not (self.flags & (WFlags.HIDDEN | WFlags.SMUDGE))


class WordsDictionary:
    """Une seule wordlist ; le dernier mot défini masque les précédents."""

    def __init__(self, *, token_start: int = 256) -> None:
        self._next_token: int = token_start
        self._words: List[Word] = []
        self._by_token: Dict[int, Word] = {}

    def _attach(self, w: Word) -> Word:
        self._words.append(w)
        self._by_token[w.token] = w
        return w

    def _alloc_token(self) -> int:
        t = self._next_token
        self._next_token += 1
        return t

    def add_primitive(self, name: str, prim: Callable[[Any], None], *, flags=WFlags.NONE, doc="") -> Word:
        return self._attach(Word(name, CodeClass.PRIMITIVE, self._alloc_token(), flags, None, prim, doc))

    def add_colon(self, name: str, *, flags=WFlags.NONE, doc="") -> Word:
        return self._attach(Word(name, CodeClass.DOCOL, self._alloc_token(), flags, [], None, doc))

    def add_constant(self, name: str, value: Any, *, flags=WFlags.NONE, doc="") -> Word:
        return self._attach(Word(name, CodeClass.DOCON, self._alloc_token(), flags, value, None, doc))

    def find(self, name: str) -> Optional[Word]:
        for w in reversed(self._words):
            if w.name == name and w.is_visible():
                return w
        return None

    def find_by_token(self, tok: int) -> Optional[Word]:
        return self._by_token.get(tok)

    def latest(self) -> Optional[Word]:
        return self._words[-1] if self._words else None

    def remove(self, w: Word) -> None:
        if w in self._words:
            self._words.remove(w)
        self._by_token.pop(w.token, None)

    def visible_names(self) -> List[str]:
        """Noms visibles, du plus récent au plus ancien, sans doublons."""
        seen = set()
        out: List[str] = []
        for w in reversed(self._words):
            if not w.is_visible() or w.name in seen:
                continue
            seen.add(w.name)
            out.append(w.name)
        return out


# ============================================================
# Découpage du source
# ============================================================

def scan_source(code: str) -> Iterator[Tuple[str, str]]:
    """
    Découpe `code` en segments (kind, texte), sans rien perdre :
      space, comment (\\ ... EOL et ( ... )), string ("..." sans échappement),
      unterminated (chaîne ouverte jusqu'à la fin), word.
    """
    i = 0
    n = len(code)
    while i < n:
        c = code[i]
        if c.isspace():
            j = i
            while j < n and code[j].isspace():
                j += 1
            yield "space", code[i:j]
            i = j
            continue
        nxt = code[i + 1] if i + 1 < n else " "
        if c == "\\" and nxt.isspace():
            j = code.find("\n", i)
            j = n if j < 0 else j
            yield "comment", code[i:j]
            i = j
            continue
        if c == "(" and nxt.isspace():
            end = code.find(")", i)
            j = n if end < 0 else end + 1
            yield "comment", code[i:j]
            i = j
            continue
        if c == '"':
            end = code.find('"', i + 1)
            if end < 0:
                yield "unterminated", code[i:]
                return
            yield "string", code[i:end + 1]
            i = end + 1
            continue
        j = i
        while j < n and not code[j].isspace() and code[j] != '"':
            j += 1
        yield "word", code[i:j]
        i = j


# ============================================================
# ForthEngine : la VM
# ============================================================

def _stdout_emit(text: str) -> None:
    sys.stdout.write(text)


class ForthEngine:
    """
    VM Forth threadée.

    Responsabilités :
    - pile de données D, espace de données `data` (cellules Python)
    - interpret(code, silent) : interprète un bloc de source, rend un ErrorCode
    - toute la sortie texte passe par self.on_emit (remplaçable par l'hôte)
    - bind(name, fn) : expose une fonction hôte fn(engine) comme mot Forth
    """

    def __init__(self) -> None:
        self.D: List[Any] = []
        self.data: List[Any] = []
        self.dict = WordsDictionary()
        self.on_emit: Callable[[str], None] = _stdout_emit
        self.loaded: bool = False

        # état du compilateur
        self.current_def: Optional[Word] = None
        self.ctrl_stack: List[tuple] = []
        self._state_addr: int = self._allot_cell(0)

        # flux de tokens du bloc en cours d'interprétation
        self._pending_tokens: List[str] = []

    # ----------------- contrat moteur -----------------

    def load(self) -> "ForthEngine":
        """Installe les mots du noyau (une seule fois)."""
        if not self.loaded:
            self._install_core()
            self.loaded = True
        return self

    def bind(self, name: str, fn: Callable[["ForthEngine"], None]) -> None:
        self.dict.add_primitive(name, fn, doc=f"host binding {name}")

    def interpret(self, code: str, silent: bool = False) -> ErrorCode:
        """
        Interprète `code` dans l'état courant de la VM.

        Les erreurs ne remontent jamais : elles sont affichées sur on_emit,
        la VM repasse en mode interprétation, et le code d'erreur est rendu.
        """
        try:
            self.evaluate(code)
        except ForthQuit:
            self._reset_compiler()
            return ErrorCode.QUIT
        except ForthBye:
            return ErrorCode.BYE
        except ForthError as e:
            return self._fail(e.code, str(e))
        except IndexError:
            return self._fail(ErrorCode.ABORT, "stack underflow")
        except ZeroDivisionError:
            return self._fail(ErrorCode.ABORT, "division by zero")
        except Exception as e:
            return self._fail(ErrorCode.UNKNOWN, f"{type(e).__name__}: {e}")
        if not silent:
            self.emit(" ok\n")
        return ErrorCode.OK

    def pop(self) -> Any:
        if not self.D:
            raise StackUnderflow("stack underflow")
        return self.D.pop()

    def push(self, value: Any) -> None:
        self.D.append(value)

    def pop_string(self) -> str:
        s = self.pop()
        if not isinstance(s, str):
            raise ForthError(f"expected string, got {s!r}")
        return s

    def push_string(self, s: Any) -> None:
        self.D.append("" if s is None else str(s))

    def emit(self, text: str) -> None:
        """Point central de sortie texte."""
        if text:
            self.on_emit(text)

    # ----------------- état -----------------

    @property
    def compiling(self) -> bool:
        return self.data[self._state_addr] != 0

    @compiling.setter
    def compiling(self, flag: bool) -> None:
        self.data[self._state_addr] = -1 if flag else 0

    def _allot_cell(self, value: Any = 0) -> int:
        self.data.append(value)
        return len(self.data) - 1

    def _reset_compiler(self) -> None:
        if self.current_def is not None:
            # définition abandonnée : elle ne doit jamais devenir visible
            self.dict.remove(self.current_def)
        self.current_def = None
        self.ctrl_stack.clear()
        self.compiling = False

    def _fail(self, code: ErrorCode, message: str) -> ErrorCode:
        if message:
            self.emit(message + "\n")
        self.D.clear()
        self._reset_compiler()
        return code

    # ----------------- exécution threadée -----------------

    def execute(self, w: Word) -> None:
        cc = w.code_class
        if cc is CodeClass.PRIMITIVE:
            w.prim(self)
        elif cc is CodeClass.DOCOL:
            self._run_threaded(w.pfa)
        elif cc is CodeClass.DOCON:
            self.D.append(w.pfa)
        else:
            raise ForthError(f"bad code class for {w.name}")

    def _run_threaded(self, pfa: List[Any]) -> None:
        # Récursif : chaque définition tourne dans sa propre boucle, ce qui
        # rend interpret() réentrant (EVALUATE, INCLUDE depuis un mot hôte).
        ip = 0
        while ip < len(pfa):
            cell = pfa[ip]
            ip += 1
            if isinstance(cell, int) and cell in CONTROL_TOKENS:
                if cell == LIT:
                    self.D.append(pfa[ip])
                    ip += 1
                elif cell == BRANCH:
                    ip = pfa[ip]
                elif cell == ZBRANCH:
                    target = pfa[ip]
                    ip += 1
                    if self.pop() == 0:
                        ip = target
                else:  # EXIT
                    return
                continue
            w = self.dict.find_by_token(cell)
            if w is None:
                raise ForthError(f"unknown token {cell!r}")
            self.execute(w)

    # ----------------- compilation -----------------

    def compile_cell(self, cell: Any) -> None:
        if self.current_def is None:
            raise ForthError("no current definition")
        self.current_def.pfa.append(cell)

    def literal(self, value: Any) -> None:
        if self.compiling:
            self.compile_cell(LIT)
            self.compile_cell(value)
        else:
            self.D.append(value)

    def placeholder(self) -> int:
        self.compile_cell(None)
        return len(self.current_def.pfa) - 1

    def patch(self, index: int, target: int) -> None:
        self.current_def.pfa[index] = target

    def here_ip(self) -> int:
        return len(self.current_def.pfa)

    # ----------------- tokenizer / interpréteur -----------------

    def tokenize(self, code: str) -> List[str]:
        out: List[str] = []
        for kind, text in scan_source(code):
            if kind == "unterminated":
                raise EndOfInput("unterminated string literal")
            if kind in ("word", "string"):
                out.append(text)
        return out

    def next_token(self) -> str:
        if not self._pending_tokens:
            raise EndOfInput("unexpected end of input")
        return self._pending_tokens.pop(0)

    def evaluate(self, code: str) -> None:
        """Interprète `code` ; les erreurs remontent (utilisé par EVALUATE)."""
        saved = self._pending_tokens
        self._pending_tokens = self.tokenize(code)
        try:
            while self._pending_tokens:
                self.interpret_token(self.next_token())
        finally:
            self._pending_tokens = saved

    @staticmethod
    def _is_string_lit(tok: str) -> bool:
        return len(tok) >= 2 and tok[0] == '"' and tok[-1] == '"'

    @staticmethod
    def _try_parse_int(tok: str) -> Optional[int]:
        try:
            return int(tok, 10)
        except ValueError:
            return None

    def interpret_token(self, tok: str) -> None:
        if self._is_string_lit(tok):
            self.literal(tok[1:-1])
            return
        val = self._try_parse_int(tok)
        if val is not None:
            self.literal(val)
            return
        w = self.dict.find(tok)
        if w is None:
            raise UndefinedWord(f"undefined word: {tok}")
        if self.compiling and not w.is_immediate():
            self.compile_cell(w.token)
            return
        if not self.compiling and w.is_compile_only():
            raise ForthError(f"{tok} is compile-only")
        self.execute(w)

    # ----------------- mots du noyau -----------------

    def _install_core(self) -> None:
        W = self.dict

        def addp(name, prim, *, flags=WFlags.NONE, doc=""):
            return W.add_primitive(name, prim, flags=flags, doc=doc)

        def tf(cond): return -1 if cond else 0

        # Pile
        addp("DROP", lambda vm: vm.pop(), doc="( x -- )")
        addp("DUP",  lambda vm: vm.D.append(vm.D[-1]), doc="( x -- x x )")
        def prim_SWAP(vm): a = vm.pop(); b = vm.pop(); vm.D.extend([a, b])
        addp("SWAP", prim_SWAP, doc="( a b -- b a )")
        addp("OVER", lambda vm: vm.D.append(vm.D[-2]), doc="( a b -- a b a )")
        def prim_ROT(vm): a = vm.pop(); b = vm.pop(); c = vm.pop(); vm.D.extend([b, a, c])
        addp("ROT", prim_ROT, doc="( a b c -- b c a )")
        def prim_NIP(vm): x2 = vm.pop(); vm.pop(); vm.D.append(x2)
        addp("NIP", prim_NIP, doc="( x1 x2 -- x2 )")
        def prim_QDUP(vm):
            if vm.D[-1] != 0:
                vm.D.append(vm.D[-1])
        addp("?DUP", prim_QDUP, doc="( x -- x x | 0 )")
        def prim_2DUP(vm): vm.D.extend([vm.D[-2], vm.D[-1]])
        addp("2DUP", prim_2DUP, doc="( a b -- a b a b )")
        def prim_2DROP(vm): vm.pop(); vm.pop()
        addp("2DROP", prim_2DROP, doc="( a b -- )")
        addp("DEPTH", lambda vm: vm.D.append(len(vm.D)), doc="( -- n )")
        def prim_PICK(vm):
            n = vm.pop()
            if not isinstance(n, int) or n < 0 or n >= len(vm.D):
                raise StackUnderflow("stack underflow")
            vm.D.append(vm.D[-1 - n])
        addp("PICK", prim_PICK, doc="( xu ... x0 u -- xu ... x0 xu )")

        # Arithmétique
        def binop(fn):
            def prim(vm):
                b = vm.pop(); a = vm.pop()
                vm.D.append(fn(a, b))
            return prim
        addp("+", binop(lambda a, b: a + b), doc="( a b -- a+b )")
        addp("-", binop(lambda a, b: a - b), doc="( a b -- a-b )")
        addp("*", binop(lambda a, b: a * b), doc="( a b -- a*b )")
        addp("/", binop(lambda a, b: a // b), doc="( a b -- a/b )")
        addp("MOD", binop(lambda a, b: a % b), doc="( a b -- a%b )")
        def prim_DIVMOD(vm):
            b = vm.pop(); a = vm.pop()
            q, r = divmod(a, b)
            vm.D.extend([r, q])
        addp("/MOD", prim_DIVMOD, doc="( a b -- r q )")
        addp("MIN", binop(min), doc="( a b -- min )")
        addp("MAX", binop(max), doc="( a b -- max )")
        addp("NEGATE", lambda vm: vm.D.append(-vm.pop()), doc="( n -- -n )")
        addp("ABS", lambda vm: vm.D.append(abs(vm.pop())), doc="( n -- |n| )")
        addp("1+", lambda vm: vm.D.append(vm.pop() + 1), doc="( n -- n+1 )")
        addp("1-", lambda vm: vm.D.append(vm.pop() - 1), doc="( n -- n-1 )")

        # Logique / comparaison (vrai = -1, faux = 0)
        addp("=",  binop(lambda a, b: tf(a == b)), doc="( a b -- flag )")
        addp("<>", binop(lambda a, b: tf(a != b)), doc="( a b -- flag )")
        addp("<",  binop(lambda a, b: tf(a < b)),  doc="( a b -- flag )")
        addp(">",  binop(lambda a, b: tf(a > b)),  doc="( a b -- flag )")
        addp("0=", lambda vm: vm.D.append(tf(vm.pop() == 0)), doc="( x -- flag )")
        addp("0<", lambda vm: vm.D.append(tf(vm.pop() < 0)),  doc="( x -- flag )")
        addp("0>", lambda vm: vm.D.append(tf(vm.pop() > 0)),  doc="( x -- flag )")
        addp("AND", binop(lambda a, b: a & b), doc="( a b -- a&b )")
        addp("OR",  binop(lambda a, b: a | b), doc="( a b -- a|b )")
        addp("XOR", binop(lambda a, b: a ^ b), doc="( a b -- a^b )")
        addp("INVERT", lambda vm: vm.D.append(~vm.pop()), doc="( x -- ~x )")
        W.add_constant("TRUE", -1, doc="boolean true")
        W.add_constant("FALSE", 0, doc="boolean false")
        W.add_constant("BL", 32, doc="( -- char ) space")

        # Espace de données
        W.add_constant("STATE", self._state_addr, doc="( -- addr ) compile state")
        addp("HERE", lambda vm: vm.D.append(len(vm.data)), doc="( -- addr )")
        def prim_ALLOT(vm):
            n = vm.pop()
            if n < 0:
                raise ForthError("ALLOT: negative")
            vm.data.extend([0] * n)
        addp("ALLOT", prim_ALLOT, doc="( n -- )")
        addp(",", lambda vm: vm.data.append(vm.pop()), doc="( x -- )")
        def address(vm):
            addr = vm.pop()
            if not isinstance(addr, int) or not 0 <= addr < len(vm.data):
                raise ForthError(f"invalid address {addr!r}")
            return addr
        addp("@", lambda vm: vm.D.append(vm.data[address(vm)]), doc="( addr -- x )")
        def prim_STORE(vm):
            addr = address(vm)
            vm.data[addr] = vm.pop()
        addp("!", prim_STORE, doc="( x addr -- )")
        def prim_PSTORE(vm):
            addr = address(vm)
            vm.data[addr] += vm.pop()
        addp("+!", prim_PSTORE, doc="( n addr -- )")

        # Sortie
        addp(".", lambda vm: vm.emit(f"{vm.pop()} "), doc="( x -- ) print")
        addp("EMIT", lambda vm: vm.emit(chr(vm.pop())), doc="( char -- )")
        addp("TYPE", lambda vm: vm.emit(str(vm.pop())), doc="( str -- )")
        addp("CR", lambda vm: vm.emit("\n"), doc="( -- )")
        addp("SPACE", lambda vm: vm.emit(" "), doc="( -- )")
        addp(".S", lambda vm: vm.emit(f"<{len(vm.D)}> " + " ".join(map(str, vm.D)) + " "), doc="( -- )")
        addp("N>S", lambda vm: vm.D.append(str(vm.pop())), doc="( n -- str )")
        addp("WORDS", lambda vm: vm.emit(" ".join(vm.dict.visible_names()) + "\n"), doc="( -- )")

        # Texte / exécution
        def prim_TICK(vm):
            name = vm.next_token()
            w = vm.dict.find(name)
            if w is None:
                raise UndefinedWord(f"undefined word: {name}")
            vm.D.append(w.token)
        addp("'", prim_TICK, doc="( <name> -- xt )")
        def prim_EXECUTE(vm):
            w = vm.dict.find_by_token(vm.pop())
            if w is None:
                raise ForthError("EXECUTE: unknown xt")
            vm.execute(w)
        addp("EXECUTE", prim_EXECUTE, doc="( xt -- )")
        addp("EVALUATE", lambda vm: vm.evaluate(vm.pop_string()), doc="( str -- ) interpret str")
        def prim_ABORT(vm): raise ForthError("", ErrorCode.ABORT)
        addp("ABORT", prim_ABORT, doc="( -- ) abort")
        def prim_QUIT(vm): raise ForthQuit()
        addp("QUIT", prim_QUIT, doc="( -- ) back to the outer interpreter")
        def prim_BYE(vm): raise ForthBye()
        addp("BYE", prim_BYE, doc="( -- ) leave the interpreter")

        # Définitions
        def prim_COLON(vm):
            name = vm.next_token()
            vm.current_def = vm.dict.add_colon(name, flags=WFlags.SMUDGE, doc=f": {name} ... ;")
            vm.compiling = True
        addp(":", prim_COLON, doc="( <name> -- ) start colon definition")

        def prim_SEMI(vm):
            if vm.current_def is None:
                raise ForthError("; outside colon definition")
            if vm.ctrl_stack:
                raise ForthError("unbalanced control structure")
            vm.compile_cell(EXIT)
            vm.current_def.flags &= ~WFlags.SMUDGE
            vm.current_def = None
            vm.compiling = False
        addp(";", prim_SEMI, flags=WFlags.IMMEDIATE | WFlags.COMPILE_ONLY, doc="end colon definition")

        def prim_IMMEDIATE(vm):
            w = vm.dict.latest()
            if w is None:
                raise ForthError("IMMEDIATE: empty dictionary")
            w.flags |= WFlags.IMMEDIATE
        addp("IMMEDIATE", prim_IMMEDIATE, doc="mark latest word immediate")
        addp("[", lambda vm: setattr(vm, "compiling", False), flags=WFlags.IMMEDIATE, doc="interpret state")
        addp("]", lambda vm: setattr(vm, "compiling", True), doc="compile state")
        addp("RECURSE", lambda vm: vm.compile_cell(vm.current_def.token),
             flags=WFlags.IMMEDIATE | WFlags.COMPILE_ONLY, doc="compile a call to the current definition")
        addp("EXIT", lambda vm: vm.compile_cell(EXIT),
             flags=WFlags.IMMEDIATE | WFlags.COMPILE_ONLY, doc="return from the current definition")

        def prim_CONSTANT(vm):
            value = vm.pop()
            vm.dict.add_constant(vm.next_token(), value)
        addp("CONSTANT", prim_CONSTANT, doc="( x <name> -- )")
        def prim_VARIABLE(vm):
            vm.dict.add_constant(vm.next_token(), vm._allot_cell(0), doc="variable")
        addp("VARIABLE", prim_VARIABLE, doc="( <name> -- )")
        def prim_CREATE(vm):
            vm.dict.add_constant(vm.next_token(), len(vm.data), doc="created")
        addp("CREATE", prim_CREATE, doc="( <name> -- ) name pushes HERE at creation")

        # Structures de contrôle
        CO = WFlags.IMMEDIATE | WFlags.COMPILE_ONLY

        def expect(kinds, word):
            if not self.ctrl_stack or self.ctrl_stack[-1][0] not in kinds:
                raise ForthError(f"{word} without {'/'.join(kinds)}")
            return self.ctrl_stack.pop()

        def prim_IF(vm):
            vm.compile_cell(ZBRANCH)
            vm.ctrl_stack.append(("IF", vm.placeholder()))
        addp("IF", prim_IF, flags=CO)

        def prim_ELSE(vm):
            _, hole = expect(("IF",), "ELSE")
            vm.compile_cell(BRANCH)
            hole2 = vm.placeholder()
            vm.patch(hole, vm.here_ip())
            vm.ctrl_stack.append(("ELSE", hole2))
        addp("ELSE", prim_ELSE, flags=CO)

        def prim_THEN(vm):
            _, hole = expect(("IF", "ELSE"), "THEN")
            vm.patch(hole, vm.here_ip())
        addp("THEN", prim_THEN, flags=CO)

        addp("BEGIN", lambda vm: vm.ctrl_stack.append(("BEGIN", vm.here_ip())), flags=CO)

        def prim_AGAIN(vm):
            _, begin_ip = expect(("BEGIN",), "AGAIN")
            vm.compile_cell(BRANCH)
            vm.compile_cell(begin_ip)
        addp("AGAIN", prim_AGAIN, flags=CO)

        def prim_UNTIL(vm):
            _, begin_ip = expect(("BEGIN",), "UNTIL")
            vm.compile_cell(ZBRANCH)
            vm.compile_cell(begin_ip)
        addp("UNTIL", prim_UNTIL, flags=CO)

        def prim_WHILE(vm):
            _, begin_ip = expect(("BEGIN",), "WHILE")
            vm.compile_cell(ZBRANCH)
            vm.ctrl_stack.append(("WHILE", vm.placeholder(), begin_ip))
        addp("WHILE", prim_WHILE, flags=CO)

        def prim_REPEAT(vm):
            _, hole, begin_ip = expect(("WHILE",), "REPEAT")
            vm.compile_cell(BRANCH)
            vm.compile_cell(begin_ip)
            vm.patch(hole, vm.here_ip())
        addp("REPEAT", prim_REPEAT, flags=CO)


# ============================================================
# Tests unitaires ForthEngine
# ============================================================

class TestForthEngine(unittest.TestCase):
    def setUp(self) -> None:
        self.out: List[str] = []
        self.vm = ForthEngine().load()
        self.vm.on_emit = self.out.append

    def feed(self, src: str, silent: bool = True) -> ErrorCode:
        return self.vm.interpret(src, silent)

    def text(self) -> str:
        return "".join(self.out)

    def test_arith_and_logic(self):
        self.assertEqual(self.feed("1 2 + . 5 2 - . 6 3 * . 7 3 /MOD . ."), ErrorCode.OK)
        self.assertEqual(self.text(), "3 3 18 2 1 ")
        self.out.clear()
        self.feed("0 0= . 3 5 < . 4 5 <> . 2 7 MIN . 2 7 MAX .")
        self.assertEqual(self.text().split(), ["-1", "-1", "-1", "2", "7"])

    def test_colon_if_and_recurse(self):
        src = """
        : SQUARE DUP * ;
        : FACT ( n -- n! ) DUP 1 > IF DUP 1- RECURSE * ELSE DROP 1 THEN ;
        7 SQUARE . 5 FACT .
        """
        self.assertEqual(self.feed(src), ErrorCode.OK)
        self.assertEqual(self.text(), "49 120 ")

    def test_begin_loops_and_exit(self):
        src = r"""
        : LOOP3 0 BEGIN 1+ DUP . DUP 3 = IF DROP EXIT THEN AGAIN ;
        : SUMTO ( n -- s ) 0 SWAP BEGIN DUP 0> WHILE SWAP OVER + SWAP 1- REPEAT DROP ;
        LOOP3 5 SUMTO .
        """
        self.assertEqual(self.feed(src), ErrorCode.OK)
        self.assertEqual(self.text(), "1 2 3 15 ")

    def test_constant_variable_create(self):
        src = """
        123 CONSTANT C
        VARIABLE X  42 X !  8 X +!
        CREATE T 1 , 2 ,
        C . X @ . T 1+ @ .
        """
        self.assertEqual(self.feed(src), ErrorCode.OK)
        self.assertEqual(self.text(), "123 50 2 ")

    def test_definition_spans_several_calls(self):
        self.assertEqual(self.feed(": DOUBLE"), ErrorCode.OK)
        self.assertTrue(self.vm.compiling)
        self.assertIsNone(self.vm.dict.find("DOUBLE"))
        self.assertEqual(self.feed("2 * ;"), ErrorCode.OK)
        self.assertFalse(self.vm.compiling)
        self.feed("21 DOUBLE .")
        self.assertEqual(self.text(), "42 ")

    def test_state_is_a_regular_variable(self):
        self.feed("STATE @ .")
        self.assertEqual(self.text(), "0 ")

    def test_undefined_word_aborts_and_resets(self):
        self.feed("1 2 3")
        code = self.feed("NOPE")
        self.assertEqual(code, ErrorCode.ABORT)
        self.assertIn("undefined word: NOPE", self.text())
        self.assertEqual(self.vm.D, [])

    def test_error_inside_definition_drops_it(self):
        self.assertEqual(self.feed(": BROKEN NOPE ;"), ErrorCode.ABORT)
        self.assertFalse(self.vm.compiling)
        self.assertIsNone(self.vm.dict.find("BROKEN"))
        self.assertNotIn("BROKEN", self.vm.dict.visible_names())

    def test_stack_underflow(self):
        self.assertEqual(self.feed("DROP"), ErrorCode.ABORT)
        self.assertIn("stack underflow", self.text())

    def test_end_of_input_quit_bye(self):
        self.assertEqual(self.feed("5 CONSTANT"), ErrorCode.END_OF_INPUT)
        self.assertEqual(self.feed(":"), ErrorCode.END_OF_INPUT)
        self.assertEqual(self.feed('"open'), ErrorCode.END_OF_INPUT)
        self.assertEqual(self.feed("QUIT"), ErrorCode.QUIT)
        self.assertEqual(self.feed("BYE"), ErrorCode.BYE)

    def test_silent_flag_controls_ok_chatter(self):
        self.feed("1 DROP", silent=False)
        self.assertEqual(self.text(), " ok\n")
        self.out.clear()
        self.feed("1 DROP", silent=True)
        self.assertEqual(self.text(), "")

    def test_bind_and_string_stack(self):
        def shout(vm: ForthEngine) -> None:
            vm.push_string(vm.pop_string().upper() + "!")
        self.vm.bind("SHOUT", shout)
        self.feed('"hi" SHOUT TYPE')
        self.assertEqual(self.text(), "HI!")
        self.vm.push_string("x")
        self.assertEqual(self.vm.pop_string(), "x")
        self.vm.push(3)
        with self.assertRaises(ForthError):
            self.vm.pop_string()

    def test_host_exception_becomes_error_code(self):
        def boom(vm: ForthEngine) -> None:
            raise ValueError("kaput")
        self.vm.bind("BOOM", boom)
        self.assertEqual(self.feed("BOOM"), ErrorCode.UNKNOWN)
        self.assertIn("kaput", self.text())

    def test_evaluate_is_reentrant(self):
        src = '"2 3" EVALUATE + .'
        self.assertEqual(self.feed(src), ErrorCode.OK)
        self.assertEqual(self.text(), "5 ")

    def test_nested_interpret_from_host_word(self):
        def inner(vm: ForthEngine) -> None:
            vm.interpret(": TEN 10 ;", True)
        self.vm.bind("DEFINE-TEN", inner)
        self.feed("DEFINE-TEN TEN 1+ .")
        self.assertEqual(self.text(), "11 ")

    def test_immediate_word_runs_while_compiling(self):
        self.feed(': MARK "<m>" TYPE ; IMMEDIATE')
        self.feed(": USER MARK 1 ;")
        self.assertEqual(self.text(), "<m>")

    def test_words_lists_visible_names_once(self):
        self.feed(": SQUARE DUP * ; : SQUARE DUP * ;")
        self.feed("WORDS")
        listing = self.text().split()
        self.assertEqual(listing.count("SQUARE"), 1)
        self.assertEqual(listing[0], "SQUARE")
        self.assertIn("DUP", listing)

    def test_comments_are_skipped(self):
        self.feed("1 ( ignored ) 2 + . \\ trailing comment\n 3 .")
        self.assertEqual(self.text(), "3 3 ")

    def test_scan_source_keeps_every_character(self):
        code = '\\ say "hi\n( a "b ) dup "x y" type "open'
        segments = list(scan_source(code))
        self.assertEqual("".join(text for _, text in segments), code)
        kinds = [kind for kind, _ in segments if kind != "space"]
        self.assertEqual(kinds, ["comment", "comment", "word", "string", "word", "unterminated"])


# ============================================================
# Runner de tests
# ============================================================

def run_all_tests() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    run_all_tests()
