#!/usr/bin/env python3
# forthkernel_capabilities.py
#
# Capacités de l'hôte exposées comme mots Forth :
#   EVAL    ( str -- str )  évaluation d'une expression Python (DANGEREUX, désactivable)
#   LOG     ( str -- )      message vers le logger "forthkernel.forth"
#   ALERT   ( str -- )      alerte utilisateur via l'hôte
#   INCLUDE ( str -- )      charge et interprète un fichier via le service Contents
#
# + les protocoles vus par le kernel : KernelHost (transport) et Contents (fichiers).

from __future__ import annotations

import asyncio
import logging
import posixpath
import sys
import unittest
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from forthkernel_engine import ErrorCode, ForthEngine, ForthError, is_success

log = logging.getLogger(__name__)
forth_log = logging.getLogger("forthkernel.forth")


# ============================================================
# Protocoles des collaborateurs
# ============================================================

class KernelHost:
    """
    Protocole minimal pour l'hôte qui transporte les messages du kernel.

    Le vrai hôte devra au moins fournir :
      - publish_stream(name, text)
      - publish_execute_result(content)
      - publish_execute_error(content)
      - alert(text)
    """

    def publish_stream(self, name: str, text: str) -> None:
        raise NotImplementedError

    def publish_execute_result(self, content: Dict[str, Any]) -> None:
        raise NotImplementedError

    def publish_execute_error(self, content: Dict[str, Any]) -> None:
        raise NotImplementedError

    def alert(self, text: str) -> None:
        raise NotImplementedError


class Contents:
    """Service de fichiers utilisé par INCLUDE."""

    async def get(self, path: str, content: bool = True) -> Dict[str, Any]:
        raise NotImplementedError


# ============================================================
# Table des capacités
# ============================================================

@dataclass(frozen=True)
class Capability:
    name: str
    fn: Callable[[Any], None]
    doc: str = ""


def resolve_include_path(base_path: str, filename: str) -> str:
    if filename.startswith("/") or not base_path:
        return filename
    return posixpath.join(base_path, filename)


def fetch_sync(contents: Contents, path: str, loop: asyncio.AbstractEventLoop) -> str:
    """
    Récupère le texte d'un fichier depuis le thread de la VM : la coroutine
    Contents.get est planifiée sur la boucle, et on bloque jusqu'au résultat.
    """
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        raise RuntimeError("INCLUDE must not run on the event loop thread")
    future = asyncio.run_coroutine_threadsafe(contents.get(path, content=True), loop)
    model = future.result()
    text = model["content"]
    if not isinstance(text, str):
        raise TypeError(f"{path}: expected text content, got {type(text).__name__}")
    return text


def _make_eval(namespace: Dict[str, Any]) -> Callable[[Any], None]:
    def EVAL(engine: Any) -> None:
        src = engine.pop_string()
        try:
            result = eval(src, namespace)
        except (Exception, SystemExit):
            # l'échec reste local (exit()/quit() compris) : la VM reçoit une chaîne vide
            log.warning("Error evaluating %r", src, exc_info=True)
            engine.push_string("")
            return
        engine.push_string(str(result))
    return EVAL


def _make_log() -> Callable[[Any], None]:
    def LOG(engine: Any) -> None:
        forth_log.info("%s", engine.pop_string())
    return LOG


def _make_alert(host: KernelHost) -> Callable[[Any], None]:
    def ALERT(engine: Any) -> None:
        host.alert(engine.pop_string())
    return ALERT


def _make_include(contents: Contents,
                  base_path: str,
                  loop: asyncio.AbstractEventLoop,
                  prepare: Callable[[str], str]) -> Callable[[Any], None]:
    def INCLUDE(engine: Any) -> None:
        path = resolve_include_path(base_path, engine.pop_string())
        try:
            text = fetch_sync(contents, path, loop)
        except Exception as e:
            raise ForthError(f"INCLUDE {path}: {e}") from e
        log.debug("including %s (%d chars)", path, len(text))
        result = engine.interpret(prepare(text), True)
        if not is_success(result):
            raise ForthError(f"INCLUDE {path} failed", ErrorCode(result))
    return INCLUDE


def capability_table(*,
                     host: KernelHost,
                     allow_eval: bool = True,
                     contents: Optional[Contents] = None,
                     loop: Optional[asyncio.AbstractEventLoop] = None,
                     base_path: str = "",
                     namespace: Optional[Dict[str, Any]] = None,
                     prepare: Callable[[str], str] = str) -> Dict[str, Capability]:
    table: Dict[str, Capability] = {}
    if allow_eval:
        ns = {} if namespace is None else namespace
        table["EVAL"] = Capability("EVAL", _make_eval(ns), "( str -- str ) evaluate a Python expression")
    table["LOG"] = Capability("LOG", _make_log(), "( str -- ) log a message")
    table["ALERT"] = Capability("ALERT", _make_alert(host), "( str -- ) alert the user")
    if contents is not None:
        if loop is None:
            raise ValueError("INCLUDE needs the event loop that serves Contents")
        table["INCLUDE"] = Capability("INCLUDE", _make_include(contents, base_path, loop, prepare),
                                      "( str -- ) interpret a file")
    return table


def install_capabilities(engine: Any, table: Dict[str, Capability]) -> None:
    for name, cap in table.items():
        engine.bind(name, cap.fn)


# ============================================================
# Collaborateurs factices (réutilisés par les tests des autres modules)
# ============================================================

class RecordingHost(KernelHost):
    """Hôte factice : enregistre tout ce que le kernel publie."""

    def __init__(self) -> None:
        self.streams: List[Tuple[str, str]] = []
        self.results: List[Dict[str, Any]] = []
        self.errors: List[Dict[str, Any]] = []
        self.alerts: List[str] = []
        self.events: List[Tuple[str, Any]] = []

    def publish_stream(self, name: str, text: str) -> None:
        self.streams.append((name, text))
        self.events.append(("stream", text))

    def publish_execute_result(self, content: Dict[str, Any]) -> None:
        self.results.append(content)
        self.events.append(("result", content))

    def publish_execute_error(self, content: Dict[str, Any]) -> None:
        self.errors.append(content)
        self.events.append(("error", content))

    def alert(self, text: str) -> None:
        self.alerts.append(text)

    def stdout(self) -> str:
        return "".join(text for name, text in self.streams if name == "stdout")


class MemoryContents(Contents):
    """Service Contents en mémoire : path -> texte."""

    def __init__(self, files: Optional[Dict[str, str]] = None) -> None:
        self.files: Dict[str, str] = dict(files or {})
        self.requests: List[str] = []

    async def get(self, path: str, content: bool = True) -> Dict[str, Any]:
        self.requests.append(path)
        if path not in self.files:
            raise FileNotFoundError(path)
        return {"path": path, "type": "file", "format": "text",
                "content": self.files[path] if content else None}


# ============================================================
# Tests unitaires
# ============================================================

class TestResolveIncludePath(unittest.TestCase):
    def test_relative_and_absolute(self):
        self.assertEqual(resolve_include_path("notebooks", "lib.fs"), "notebooks/lib.fs")
        self.assertEqual(resolve_include_path("notebooks/", "lib.fs"), "notebooks/lib.fs")
        self.assertEqual(resolve_include_path("notebooks", "/abs/lib.fs"), "/abs/lib.fs")
        self.assertEqual(resolve_include_path("", "lib.fs"), "lib.fs")


class TestSimpleCapabilities(unittest.TestCase):
    def setUp(self) -> None:
        self.host = RecordingHost()
        self.out: List[str] = []
        self.engine = ForthEngine().load()
        self.engine.on_emit = self.out.append

    def install(self, **kw: Any) -> Dict[str, Capability]:
        table = capability_table(host=self.host, **kw)
        install_capabilities(self.engine, table)
        return table

    def test_eval_pushes_string_result(self):
        self.install(namespace={"x": 20})
        self.assertEqual(self.engine.interpret('"x * 2 + 2" EVAL TYPE', True), ErrorCode.OK)
        self.assertEqual("".join(self.out), "42")

    def test_eval_failure_pushes_empty_string_and_logs(self):
        self.install()
        with self.assertLogs(log, level="WARNING") as cm:
            code = self.engine.interpret('"1 +" EVAL "[" TYPE TYPE "]" TYPE', True)
        self.assertEqual(code, ErrorCode.OK)
        self.assertEqual("".join(self.out), "[]")
        self.assertIn("Error evaluating", cm.output[0])

    def test_eval_exit_is_swallowed(self):
        self.install()
        for src in ("exit()", "quit()", "__import__('sys').exit(3)"):
            self.engine.push_string(src)
            with self.assertLogs(log, level="WARNING"):
                code = self.engine.interpret("EVAL", True)
            self.assertEqual(code, ErrorCode.OK, src)
            self.assertEqual(self.engine.pop_string(), "")
            self.assertEqual(self.engine.D, [])

    def test_eval_can_be_disabled(self):
        table = self.install(allow_eval=False)
        self.assertNotIn("EVAL", table)
        self.assertEqual(self.engine.interpret('"1" EVAL', True), ErrorCode.ABORT)

    def test_log_and_alert(self):
        self.install()
        with self.assertLogs("forthkernel.forth", level="INFO") as cm:
            self.engine.interpret('"Hello Log" LOG "Hello Alert" ALERT', True)
        self.assertEqual(cm.records[0].getMessage(), "Hello Log")
        self.assertEqual(self.host.alerts, ["Hello Alert"])

    def test_include_requires_loop(self):
        with self.assertRaises(ValueError):
            capability_table(host=self.host, contents=MemoryContents())


class TestInclude(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.loop = asyncio.get_running_loop()
        self.contents = MemoryContents({
            "nb/lib.fs": ": SQUARE DUP * ;\n",
            "/shared/cube.fs": ": CUBE DUP SQUARE * ;\n",
            "nb/bad.fs": "NOPE\n",
        })
        self.out: List[str] = []
        self.engine = ForthEngine().load()
        self.engine.on_emit = self.out.append
        table = capability_table(host=RecordingHost(), contents=self.contents,
                                 loop=self.loop, base_path="nb")
        install_capabilities(self.engine, table)

    async def run_vm(self, code: str) -> ErrorCode:
        return await self.loop.run_in_executor(None, self.engine.interpret, code, True)

    async def test_relative_then_absolute_include(self):
        code = await self.run_vm('"lib.fs" INCLUDE "/shared/cube.fs" INCLUDE 3 CUBE .')
        self.assertEqual(code, ErrorCode.OK)
        self.assertEqual("".join(self.out), "27 ")
        self.assertEqual(self.contents.requests, ["nb/lib.fs", "/shared/cube.fs"])

    async def test_include_runs_before_rest_of_line(self):
        code = await self.run_vm('1 . "lib.fs" INCLUDE 2 SQUARE .')
        self.assertEqual(code, ErrorCode.OK)
        self.assertEqual("".join(self.out), "1 4 ")

    async def test_missing_file_aborts_enclosing_request(self):
        code = await self.run_vm('"missing.fs" INCLUDE 1 .')
        self.assertEqual(code, ErrorCode.ABORT)
        self.assertIn("INCLUDE nb/missing.fs", "".join(self.out))
        self.assertNotIn("1 ", "".join(self.out))

    async def test_error_inside_included_file_aborts(self):
        code = await self.run_vm('"bad.fs" INCLUDE')
        self.assertEqual(code, ErrorCode.ABORT)
        self.assertIn("undefined word: NOPE", "".join(self.out))

    async def test_include_on_loop_thread_is_refused(self):
        code = self.engine.interpret('"lib.fs" INCLUDE', True)
        self.assertEqual(code, ErrorCode.ABORT)
        self.assertIn("event loop thread", "".join(self.out))
        self.assertEqual(self.contents.requests, [])


def run_all_tests() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    run_all_tests()
