#!/usr/bin/env python3
# forthkernel_session.py
#
# Session VM du kernel :
# - cycle de vie : UNINITIALIZED -> LOADING -> PRELUDE -> READY -> DISPOSED (+ FAILED)
# - un seul thread worker pour la VM (chargement, prélude, interprétation)
# - future "ready" résolue une seule fois ; toute requête l'attend
# - prélude Forth : KERNEL-MODE, KERNEL-STATUS (+ S+ et les capacités hôte)
#
# Aucune mise en forme protocolaire ici : voir forthkernel_kernel.

from __future__ import annotations

import asyncio
import logging
import sys
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Callable, Dict, Optional

from forthkernel_capabilities import (
    Contents,
    KernelHost,
    MemoryContents,
    RecordingHost,
    capability_table,
    install_capabilities,
)
from forthkernel_completion import WordSnapshot
from forthkernel_engine import ErrorCode, ForthEngine, is_success, scan_source
from forthkernel_output import STREAM_NAME, CaptureWindow, KernelError, LineBuffer

log = logging.getLogger(__name__)


class SessionFatalError(KernelError):
    """Le moteur n'a pas pu être chargé ou le prélude a échoué : session inutilisable."""


class SessionDisposedError(KernelError):
    """La session a été détruite."""


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    PRELUDE = "prelude"
    READY = "ready"
    FAILED = "failed"
    DISPOSED = "disposed"


# ============================================================
# Configuration
# ============================================================

_OPTION_ALIASES = {
    "allowEval": "allow_eval",
    "caseSensitive": "case_sensitive",
    "basePath": "base_path",
}


@dataclass
class KernelOptions:
    allow_eval: bool = True
    silent: bool = True
    case_sensitive: bool = False
    base_path: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "KernelOptions":
        known = {f.name for f in fields(cls)}
        kw: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                log.debug("ignoring unknown kernel option %r", key)
                continue
            if value is not None:
                kw[name] = value
        return cls(**kw)


def fold_case(code: str) -> str:
    """Passe les mots en majuscules ; chaînes "..." et commentaires restent intacts."""
    return "".join(text.upper() if kind == "word" else text for kind, text in scan_source(code))


# ============================================================
# Prélude
# ============================================================

PRELUDE_SRC = r"""
\ Mots utilisés par le kernel lui-même (interrogés en mode capture)

: KERNEL-MODE ( -- ) STATE @ . ; IMMEDIATE

: KERNEL-TOP ( n -- ) BEGIN DUP 0> WHILE DUP PICK . 1- REPEAT DROP ;

: KERNEL-STATUS ( -- )
  STATE @ IF "compiling" TYPE EXIT THEN
  DEPTH N>S "<" SWAP S+ "> " S+ TYPE
  DEPTH 3 MIN KERNEL-TOP "ok" TYPE ; IMMEDIATE
"""


def prim_s_plus(engine: Any) -> None:
    """S+ ( s1 s2 -- s1s2 )"""
    s2 = engine.pop_string()
    s1 = engine.pop_string()
    engine.push_string(s1 + s2)


# ============================================================
# VMSession
# ============================================================

class VMSession:
    """
    Propriétaire unique du moteur Forth.

    Responsabilités :
    - charger le moteur et exécuter le prélude sur le thread worker
    - exposer interpret() (async, sur le worker) et capture() (sync, sur la boucle)
    - découper la sortie en lignes et la publier sur le flux "stdout" de l'hôte
    """

    def __init__(self,
                 host: KernelHost,
                 options: Optional[KernelOptions] = None,
                 contents: Optional[Contents] = None,
                 engine_factory: Callable[[], Any] = ForthEngine) -> None:
        self.host = host
        self.options = options or KernelOptions()
        self.contents = contents
        self._engine_factory = engine_factory

        self.engine: Optional[Any] = None
        self.state = SessionState.UNINITIALIZED
        self.snapshot = WordSnapshot()
        self.window = CaptureWindow()
        self.lines = LineBuffer(self._publish_line)
        self.namespace: Dict[str, Any] = {}

        self._executor: Optional[ThreadPoolExecutor] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._ready: Optional[asyncio.Future] = None

    # ----------------- readiness -----------------

    @property
    def ready(self) -> asyncio.Future:
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
            self._ready.add_done_callback(_consume_exception)
        return self._ready

    def _set_state(self, state: SessionState) -> None:
        log.debug("session state %s -> %s", self.state.value, state.value)
        self.state = state

    async def start(self) -> None:
        """
        Charge le moteur puis exécute le prélude. Les échecs rejettent `ready`.
        Déjà en cours : attend la fin du démarrage (sans lever).
        """
        if self.state is SessionState.DISPOSED:
            return
        if self.state is not SessionState.UNINITIALIZED:
            await asyncio.wait({self.ready})
            return
        loop = asyncio.get_running_loop()
        ready = self.ready
        self._loop = loop
        self._loop_thread = threading.get_ident()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="forthkernel-vm")

        log.info("Initializing Forth kernel")
        try:
            self._set_state(SessionState.LOADING)
            engine = await loop.run_in_executor(self._executor, self._load_engine)
            if self.state is SessionState.DISPOSED:
                return
            self.engine = engine

            self._set_state(SessionState.PRELUDE)
            result = await loop.run_in_executor(self._executor, engine.interpret, PRELUDE_SRC, True)
            self.lines.flush()
            if self.state is SessionState.DISPOSED:
                return
            if not is_success(result):
                raise SessionFatalError(f"prelude failed: {_errname(result)}")
        except Exception as e:
            if self.state is SessionState.DISPOSED:
                return
            log.error("Forth kernel failed to start", exc_info=True)
            self._set_state(SessionState.FAILED)
            self.engine = None
            if not ready.done():
                if isinstance(e, SessionFatalError):
                    fatal = e
                else:
                    fatal = SessionFatalError(f"engine load failed: {e}")
                    fatal.__cause__ = e
                ready.set_exception(fatal)
            return

        self._set_state(SessionState.READY)
        self.refresh_words()
        ready.set_result(None)
        log.info("Forth kernel ready")

    def _load_engine(self) -> Any:
        engine = self._engine_factory()
        engine.on_emit = self.lines.write
        engine.load()
        engine.bind("S+", prim_s_plus)
        table = capability_table(
            host=self.host,
            allow_eval=self.options.allow_eval,
            contents=self.contents,
            loop=self._loop if self.contents is not None else None,
            base_path=self.options.base_path,
            namespace=self.namespace,
            prepare=self.prepare_code,
        )
        install_capabilities(engine, table)
        log.debug("bound host capabilities: %s", ", ".join(table))
        return engine

    async def wait_ready(self) -> None:
        if self.state is SessionState.DISPOSED:
            raise SessionDisposedError("session disposed")
        await asyncio.shield(self.ready)
        if self.state is SessionState.DISPOSED:
            raise SessionDisposedError("session disposed")

    def _require_engine(self) -> Any:
        if self.state is SessionState.DISPOSED:
            raise SessionDisposedError("session disposed")
        if self.state is not SessionState.READY or self.engine is None:
            raise SessionFatalError(f"session not ready ({self.state.value})")
        return self.engine

    # ----------------- exécution -----------------

    def prepare_code(self, code: str) -> str:
        return code if self.options.case_sensitive else fold_case(code)

    async def interpret(self, code: str, silent: bool) -> int:
        """Interprète `code` sur le thread worker ; la ligne partielle est publiée à la fin."""
        await self.wait_ready()
        engine = self._require_engine()
        result = await self._loop.run_in_executor(self._executor, engine.interpret, code, silent)
        self.lines.flush()
        return _as_code(result)

    def capture(self, code: str) -> str:
        """Requête interne synchrone dont la sortie ne va jamais sur le flux visible."""
        return self.window.capture(self._require_engine(), code)

    def in_interpret_mode(self) -> bool:
        text = self.capture("KERNEL-MODE").strip()
        try:
            return int(text) == 0
        except ValueError:
            log.warning("unexpected KERNEL-MODE output %r", text)
            return False

    def status_line(self) -> str:
        return self.capture("KERNEL-STATUS").strip()

    def refresh_words(self) -> None:
        self.snapshot.refresh(self.capture("WORDS"))
        log.debug("word snapshot refreshed (%d names)", len(self.snapshot))

    # ----------------- sortie -----------------

    def _publish_line(self, line: str) -> None:
        if self._loop is None or threading.get_ident() == self._loop_thread:
            self.host.publish_stream(STREAM_NAME, line)
        else:
            self._loop.call_soon_threadsafe(self.host.publish_stream, STREAM_NAME, line)

    # ----------------- destruction -----------------

    def dispose(self) -> None:
        if self.state is SessionState.DISPOSED:
            return
        self._set_state(SessionState.DISPOSED)
        self.engine = None
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(SessionDisposedError("session disposed before it was ready"))
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


def _consume_exception(fut: asyncio.Future) -> None:
    # évite "exception was never retrieved" quand personne n'attend la session
    if not fut.cancelled():
        fut.exception()


def _as_code(result: Any) -> int:
    try:
        return ErrorCode(result)
    except ValueError:
        return int(result)


def _errname(result: Any) -> str:
    code = _as_code(result)
    return code.name if isinstance(code, ErrorCode) else str(code)


# ============================================================
# Tests unitaires
# ============================================================

class BrokenPreludeEngine(ForthEngine):
    def interpret(self, code: str, silent: bool = False) -> ErrorCode:
        return ErrorCode.ABORT


class UnloadableEngine(ForthEngine):
    def load(self) -> "ForthEngine":
        raise OSError("engine image missing")


class TestKernelOptions(unittest.TestCase):
    def test_defaults(self):
        opts = KernelOptions()
        self.assertTrue(opts.allow_eval)
        self.assertTrue(opts.silent)
        self.assertFalse(opts.case_sensitive)
        self.assertEqual(opts.base_path, "")

    def test_from_dict_accepts_camel_case(self):
        with self.assertLogs(log, level="DEBUG") as cm:
            opts = KernelOptions.from_dict({"allowEval": False, "caseSensitive": True,
                                            "basePath": "nb", "silent": None, "color": "red"})
        self.assertEqual(opts, KernelOptions(allow_eval=False, silent=True, case_sensitive=True, base_path="nb"))
        self.assertIn("color", cm.output[0])


class TestFoldCase(unittest.TestCase):
    def test_strings_keep_their_case(self):
        self.assertEqual(fold_case(': sq dup * ; "Hello World" type'),
                         ': SQ DUP * ; "Hello World" TYPE')

    def test_no_strings(self):
        self.assertEqual(fold_case("5 sq ."), "5 SQ .")

    def test_quote_in_line_comment(self):
        self.assertEqual(fold_case('\\ say "hi\n3 dup * . "x" type'),
                         '\\ say "hi\n3 DUP * . "x" TYPE')

    def test_quote_in_paren_comment(self):
        self.assertEqual(fold_case('( a "b ) 2 dup + . ( " )'),
                         '( a "b ) 2 DUP + . ( " )')

    def test_unterminated_string_is_left_alone(self):
        self.assertEqual(fold_case('1 dup "open end'), '1 DUP "open end')


class TestSessionLifecycle(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.host = RecordingHost()
        self.session = VMSession(self.host)

    async def asyncTearDown(self) -> None:
        self.session.dispose()

    async def test_start_runs_prelude(self):
        await self.session.start()
        self.assertIs(self.session.state, SessionState.READY)
        self.assertTrue(self.session.ready.done())
        self.assertEqual(self.session.status_line(), "<0> ok")
        self.assertTrue(self.session.in_interpret_mode())
        self.assertEqual(self.host.streams, [])

    async def test_status_line_shows_three_top_values(self):
        await self.session.start()
        self.assertEqual(await self.session.interpret("1 2 3 4", True), ErrorCode.OK)
        self.assertEqual(self.session.status_line(), "<4> 2 3 4 ok")
        self.assertEqual(await self.session.interpret('"x"', True), ErrorCode.OK)
        self.assertEqual(self.session.status_line(), "<5> 3 4 x ok")

    async def test_compile_mode_is_reported(self):
        await self.session.start()
        await self.session.interpret(": FOO 1", True)
        self.assertFalse(self.session.in_interpret_mode())
        self.assertEqual(self.session.status_line(), "compiling")
        await self.session.interpret("+ ;", True)
        self.assertTrue(self.session.in_interpret_mode())

    async def test_output_is_published_line_by_line(self):
        await self.session.start()
        await self.session.interpret('"a" TYPE CR "b" TYPE', True)
        self.assertEqual(self.host.streams, [("stdout", "a\n"), ("stdout", "b")])

    async def test_capture_does_not_leak(self):
        await self.session.start()
        await self.session.interpret(": NOISY 1000 BEGIN DUP . 1- DUP 0= UNTIL DROP ;", True)
        text = self.session.capture("NOISY")
        self.assertTrue(text.startswith("1000 999"))
        self.session.refresh_words()
        self.session.status_line()
        self.assertEqual(self.host.streams, [])
        self.assertIn("NOISY", self.session.snapshot)
        self.assertIn("KERNEL-STATUS", self.session.snapshot)

    async def test_requests_wait_for_readiness(self):
        task = asyncio.create_task(self.session.interpret("6 7 * .", True))
        await asyncio.sleep(0)
        self.assertFalse(task.done())
        await self.session.start()
        self.assertEqual(await task, ErrorCode.OK)
        self.assertEqual(self.host.stdout(), "42 ")

    async def test_start_twice_is_noop(self):
        await self.session.start()
        engine = self.session.engine
        await self.session.start()
        self.assertIs(self.session.engine, engine)

    async def test_dispose_is_idempotent(self):
        await self.session.start()
        self.session.dispose()
        self.session.dispose()
        self.assertIs(self.session.state, SessionState.DISPOSED)
        self.assertIsNone(self.session.engine)
        with self.assertRaises(SessionDisposedError):
            await self.session.interpret("1", True)
        with self.assertRaises(SessionDisposedError):
            self.session.capture("1")

    async def test_dispose_before_ready_rejects_waiters(self):
        waiter = asyncio.create_task(self.session.wait_ready())
        await asyncio.sleep(0)
        self.session.dispose()
        with self.assertRaises(SessionDisposedError):
            await waiter

    async def test_case_folding_applies_to_includes(self):
        contents = MemoryContents({"lib/sq.fs": ": sq dup * ;"})
        session = VMSession(self.host, KernelOptions(base_path="lib"), contents=contents)
        try:
            await session.start()
            code = await session.interpret(session.prepare_code('"sq.fs" include 4 sq .'), True)
            self.assertEqual(code, ErrorCode.OK)
            self.assertEqual(self.host.stdout(), "16 ")
        finally:
            session.dispose()


class TestSessionFatal(unittest.IsolatedAsyncioTestCase):
    async def check_fatal(self, factory: Callable[[], Any]) -> VMSession:
        session = VMSession(RecordingHost(), engine_factory=factory)
        with self.assertLogs(log, level="ERROR"):
            await session.start()
        self.assertIs(session.state, SessionState.FAILED)
        self.assertIsNone(session.engine)
        for _ in range(2):
            with self.assertRaises(SessionFatalError):
                await session.wait_ready()
        with self.assertRaises(SessionFatalError):
            await session.interpret("1", True)
        session.dispose()
        return session

    async def test_prelude_failure_is_fatal(self):
        await self.check_fatal(BrokenPreludeEngine)

    async def test_load_failure_is_fatal(self):
        await self.check_fatal(UnloadableEngine)


def run_all_tests() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    run_all_tests()
