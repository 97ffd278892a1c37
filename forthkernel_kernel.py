#!/usr/bin/env python3
# forthkernel_kernel.py
#
# Adaptateur protocolaire du kernel Forth :
# - execute_request : interprète, classe le résultat, publie statut ou erreur
# - complete_request : complétion sur la photo du dictionnaire + buffer courant
# - kernel_info_request : descripteur statique
# - le reste du protocole (inspect, comm, input) : NotImplementedError
#
# Le transport des messages appartient à l'hôte (KernelHost).

from __future__ import annotations

import asyncio
import logging
import sys
import unittest
from typing import Any, Callable, Dict, Optional

from forthkernel_capabilities import Contents, KernelHost, MemoryContents, RecordingHost
from forthkernel_completion import complete
from forthkernel_engine import ErrorCode, ForthEngine, is_success
from forthkernel_session import KernelOptions, SessionDisposedError, SessionFatalError, SessionState, VMSession

log = logging.getLogger(__name__)

__version__ = "0.1.0"

IMPLEMENTATION = "forthkernel"
PROTOCOL_VERSION = "5.3"
BANNER = "A Forth kernel running on an embedded Python VM"

LANGUAGE_INFO: Dict[str, Any] = {
    "name": "forth",
    "version": "Forth-2012",
    "file_extension": ".fs",
    "mimetype": "text/x-forth",
    "codemirror_mode": {"name": "forth"},
    "pygments_lexer": "forth",
    "nbconvert_exporter": "text",
}

HELP_LINKS = [
    {"text": "Forth 2012 standard", "url": "https://forth-standard.org/"},
]

_ERROR_LABELS = {
    ErrorCode.QUIT: "Error: Quit",
    ErrorCode.ABORT: "Error: Abort",
    ErrorCode.END_OF_INPUT: "Error: End of input",
    ErrorCode.BYE: "Error: Bye",
}


def error_string(code: int) -> str:
    label = _ERROR_LABELS.get(code)
    if label is None:
        return f"Unknown Error ({int(code)})"
    return f"{label} ({int(code)})"


class ForthKernel:
    """
    Kernel Forth vu par l'hôte.

    Une requête à la fois : l'hôte attend la réponse avant d'envoyer la
    suivante. Les erreurs VM deviennent des réponses "error" ; seules les
    erreurs de cycle de vie (SessionFatalError, SessionDisposedError)
    remontent comme exceptions.

    Sans appel explicite à start(), la première requête démarre la session.
    """

    def __init__(self,
                 host: KernelHost,
                 options: Optional[KernelOptions] = None,
                 contents: Optional[Contents] = None,
                 engine_factory: Callable[[], Any] = ForthEngine) -> None:
        self.host = host
        self.options = options or KernelOptions()
        self.session = VMSession(host, self.options, contents, engine_factory)
        self.execution_count = 0
        self._start_task: Optional[asyncio.Future] = None

    # ----------------- cycle de vie -----------------

    async def start(self) -> None:
        await self.session.start()

    @property
    def ready(self) -> asyncio.Future:
        return self.session.ready

    @property
    def is_disposed(self) -> bool:
        return self.session.state is SessionState.DISPOSED

    def dispose(self) -> None:
        self.session.dispose()

    def _ensure_started(self) -> None:
        if self.session.state is SessionState.UNINITIALIZED and self._start_task is None:
            self._start_task = asyncio.ensure_future(self.session.start())

    # ----------------- protocole -----------------

    async def kernel_info_request(self, content: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "implementation": IMPLEMENTATION,
            "implementation_version": __version__,
            "language_info": dict(LANGUAGE_INFO),
            "protocol_version": PROTOCOL_VERSION,
            "status": "ok",
            "banner": BANNER,
            "help_links": [dict(link) for link in HELP_LINKS],
        }

    async def execute_request(self, content: Dict[str, Any]) -> Dict[str, Any]:
        code = content.get("code", "")
        self._ensure_started()
        await self.session.wait_ready()
        self.execution_count += 1

        result = await self.session.interpret(self.session.prepare_code(code), self.options.silent)
        if is_success(result):
            return self._reply_ok()
        return self._reply_error(result)

    def _reply_ok(self) -> Dict[str, Any]:
        if self.session.in_interpret_mode():
            self.session.refresh_words()
        status = self.session.status_line()
        self.host.publish_execute_result({
            "execution_count": self.execution_count,
            "data": {"text/plain": status},
            "metadata": {},
        })
        return {
            "status": "ok",
            "execution_count": self.execution_count,
            "user_expressions": {},
        }

    def _reply_error(self, result: int) -> Dict[str, Any]:
        evalue = error_string(result)
        log.debug("execute_request %d failed: %s", self.execution_count, evalue)
        self.host.publish_execute_error({"ename": "Error", "evalue": evalue, "traceback": []})
        return {
            "status": "error",
            "execution_count": self.execution_count,
            "ename": "Error",
            "evalue": evalue,
            "traceback": [],
        }

    async def complete_request(self, content: Dict[str, Any]) -> Dict[str, Any]:
        self._ensure_started()
        await self.session.wait_ready()
        code = content.get("code", "")
        return self.complete(code, content.get("cursor_pos", len(code)))

    def complete(self, code: str, cursor_pos: int) -> Dict[str, Any]:
        """Version synchrone (utilisée directement par la console)."""
        return complete(self.session.snapshot, code, cursor_pos)

    async def inspect_request(self, content: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError("inspect_request is not implemented")

    async def is_complete_request(self, content: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError("is_complete_request is not implemented")

    async def comm_info_request(self, content: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError("comm_info_request is not implemented")

    def input_reply(self, content: Dict[str, Any]) -> None:
        raise NotImplementedError("input_reply is not implemented")

    async def comm_open(self, msg: Dict[str, Any]) -> None:
        raise NotImplementedError("comm_open is not implemented")

    async def comm_msg(self, msg: Dict[str, Any]) -> None:
        raise NotImplementedError("comm_msg is not implemented")

    async def comm_close(self, msg: Dict[str, Any]) -> None:
        raise NotImplementedError("comm_close is not implemented")


# ============================================================
# Tests unitaires
# ============================================================

class TestErrorString(unittest.TestCase):
    def test_labels(self):
        self.assertEqual(error_string(ErrorCode.QUIT), "Error: Quit (-56)")
        self.assertEqual(error_string(ErrorCode.ABORT), "Error: Abort (-1)")
        self.assertEqual(error_string(ErrorCode.END_OF_INPUT), "Error: End of input (-257)")
        self.assertEqual(error_string(ErrorCode.BYE), "Error: Bye (-258)")
        self.assertEqual(error_string(ErrorCode.UNKNOWN), "Unknown Error (1)")
        self.assertEqual(error_string(-13), "Unknown Error (-13)")


class KernelTestCase(unittest.IsolatedAsyncioTestCase):
    options: Optional[KernelOptions] = None

    async def asyncSetUp(self) -> None:
        self.host = RecordingHost()
        self.contents = MemoryContents()
        self.kernel = ForthKernel(self.host, self.options, contents=self.contents)
        await self.kernel.start()

    async def asyncTearDown(self) -> None:
        self.kernel.dispose()

    async def execute(self, code: str) -> Dict[str, Any]:
        return await self.kernel.execute_request({"code": code})

    def last_result(self) -> str:
        return self.host.results[-1]["data"]["text/plain"]


class TestKernelInfo(KernelTestCase):
    async def test_descriptor(self):
        info = await self.kernel.kernel_info_request()
        self.assertEqual(info["implementation"], "forthkernel")
        self.assertEqual(info["protocol_version"], "5.3")
        self.assertEqual(info["status"], "ok")
        lang = info["language_info"]
        self.assertEqual((lang["name"], lang["file_extension"], lang["mimetype"]),
                         ("forth", ".fs", "text/x-forth"))
        self.assertTrue(info["banner"])
        self.assertTrue(info["help_links"])


class TestExecuteRequest(KernelTestCase):
    async def test_square_scenario(self):
        reply = await self.execute(": SQUARE DUP * ;")
        self.assertEqual(reply, {"status": "ok", "execution_count": 1, "user_expressions": {}})
        self.assertIn("SQUARE", self.kernel.session.snapshot)

        reply = await self.execute("5 SQUARE .")
        self.assertEqual(reply["status"], "ok")
        self.assertEqual(reply["execution_count"], 2)
        self.assertIn("25", self.host.stdout())
        self.assertEqual(self.last_result(), "<0> ok")

        await self.execute("5 square")
        self.assertEqual(self.last_result(), "<1> 25 ok")
        self.assertEqual(self.host.results[-1]["execution_count"], 3)

    async def test_errors_become_replies(self):
        for code, evalue in [("NOPE", "Error: Abort (-1)"),
                             ("DROP", "Error: Abort (-1)"),
                             ("1 CONSTANT", "Error: End of input (-257)"),
                             ("QUIT", "Error: Quit (-56)"),
                             ("BYE", "Error: Bye (-258)")]:
            reply = await self.execute(code)
            self.assertEqual(reply["status"], "error", code)
            self.assertEqual(reply["ename"], "Error")
            self.assertEqual(reply["evalue"], evalue)
            self.assertEqual(reply["traceback"], [])
            self.assertEqual(self.host.errors[-1]["evalue"], evalue)
        self.assertEqual(self.kernel.execution_count, 5)
        self.assertEqual(self.host.results, [])

    async def test_session_survives_errors(self):
        await self.execute("1 2 3")
        await self.execute("NOPE")
        self.assertIn("undefined word: NOPE", self.host.stdout())
        reply = await self.execute("4")
        self.assertEqual(reply["status"], "ok")
        self.assertEqual(self.last_result(), "<1> 4 ok")

    async def test_unterminated_definition(self):
        reply = await self.execute(": FOO")
        self.assertEqual(reply["status"], "ok")
        self.assertEqual(self.last_result(), "compiling")
        self.assertNotIn("FOO", self.kernel.session.snapshot)

        code = ": FOO BA"
        reply = await self.kernel.complete_request({"code": code, "cursor_pos": len(code)})
        self.assertNotIn("FOO", reply["matches"])
        code = ": FOO FO"
        reply = await self.kernel.complete_request({"code": code, "cursor_pos": len(code)})
        self.assertIn("FOO", reply["matches"])

        await self.execute("1 ;")
        await self.execute("FOO")
        self.assertEqual(self.last_result(), "<1> 1 ok")
        self.assertIn("FOO", self.kernel.session.snapshot)

    async def test_status_and_listing_never_reach_stdout(self):
        await self.execute(": SHOUT 200 BEGIN DUP . 1- DUP 0= UNTIL ;")
        self.assertEqual(self.host.streams, [])
        await self.execute("1 2 3")
        self.assertEqual(self.host.streams, [])
        self.assertEqual(len(self.host.results), 2)

    async def test_stream_precedes_result(self):
        await self.execute('"line one" TYPE CR "partial" TYPE')
        kinds = [kind for kind, _ in self.host.events]
        self.assertEqual(kinds, ["stream", "stream", "result"])
        self.assertEqual(self.host.streams, [("stdout", "line one\n"), ("stdout", "partial")])

    async def test_string_literals_keep_case(self):
        await self.execute('"Hello" type')
        self.assertEqual(self.host.stdout(), "Hello")

    async def test_quotes_inside_comments(self):
        reply = await self.execute('\\ say "hi\n3 dup * . "x" type')
        self.assertEqual(reply["status"], "ok")
        await self.execute('( a "b ) 2 dup + . ( " )')
        self.assertEqual(self.host.stdout(), "9 x4 ")

    async def test_eval_exit_stays_in_cell(self):
        with self.assertLogs("forthkernel_capabilities", level="WARNING"):
            reply = await self.execute('"exit()" EVAL DROP')
        self.assertEqual(reply["status"], "ok")
        reply = await self.execute("1")
        self.assertEqual(reply["status"], "ok")

    async def test_include_relative_to_root(self):
        self.contents.files["lib.fs"] = ": TWICE 2 * ;"
        reply = await self.execute('"lib.fs" INCLUDE 21 TWICE')
        self.assertEqual(reply["status"], "ok")
        self.assertEqual(self.last_result(), "<1> 42 ok")
        self.assertIn("TWICE", self.kernel.session.snapshot)


class TestCompleteRequest(KernelTestCase):
    async def test_completion_from_snapshot(self):
        await self.execute(": SQUARE DUP * ;")
        reply = await self.kernel.complete_request({"code": "5 SQ", "cursor_pos": 4})
        self.assertEqual(reply, {"matches": ["SQUARE"], "cursor_start": 2, "cursor_end": 4,
                                 "metadata": {}, "status": "ok"})

    async def test_completion_includes_builtins(self):
        reply = await self.kernel.complete_request({"code": "DR"})
        self.assertIn("DROP", reply["matches"])


class TestCaseSensitiveKernel(KernelTestCase):
    options = KernelOptions(case_sensitive=True, silent=False, allow_eval=False)

    async def test_lower_case_is_not_folded(self):
        reply = await self.execute("1 dup")
        self.assertEqual(reply["status"], "error")
        self.assertIn("undefined word: dup", self.host.stdout())

    async def test_verbose_mode_keeps_ok_chatter(self):
        await self.execute("1 DROP")
        self.assertEqual(self.host.stdout(), " ok\n")

    async def test_eval_is_not_bound(self):
        reply = await self.execute('"1+1" EVAL')
        self.assertEqual(reply["evalue"], "Error: Abort (-1)")


class TestUnimplementedVerbs(KernelTestCase):
    async def test_declared_not_implemented(self):
        for verb in (self.kernel.inspect_request, self.kernel.is_complete_request,
                     self.kernel.comm_info_request, self.kernel.comm_open,
                     self.kernel.comm_msg, self.kernel.comm_close):
            with self.assertRaises(NotImplementedError):
                await verb({})
        with self.assertRaises(NotImplementedError):
            self.kernel.input_reply({})


class TestKernelLifecycle(unittest.IsolatedAsyncioTestCase):
    async def test_start_during_pending_request(self):
        kernel = ForthKernel(RecordingHost())
        pending = asyncio.create_task(kernel.execute_request({"code": "3 4 +"}))
        await asyncio.sleep(0)
        await kernel.start()
        reply = await pending
        self.assertEqual(reply["execution_count"], 1)
        kernel.dispose()
        kernel.dispose()
        self.assertTrue(kernel.is_disposed)
        with self.assertRaises(SessionDisposedError):
            await kernel.execute_request({"code": "1"})

    async def test_first_request_starts_session(self):
        host = RecordingHost()
        kernel = ForthKernel(host)
        reply = await kernel.execute_request({"code": "2 3 +"})
        self.assertEqual(reply["status"], "ok")
        self.assertEqual(host.results[-1]["data"]["text/plain"], "<1> 5 ok")
        self.assertIs(kernel.session.state, SessionState.READY)
        kernel.dispose()

    async def test_completion_starts_session(self):
        kernel = ForthKernel(RecordingHost())
        reply = await kernel.complete_request({"code": "DU", "cursor_pos": 2})
        self.assertIn("DUP", reply["matches"])
        kernel.dispose()

    async def test_fatal_session_is_not_an_error_reply(self):
        class NoPrelude(ForthEngine):
            def interpret(self, code: str, silent: bool = False) -> ErrorCode:
                return ErrorCode.UNKNOWN

        host = RecordingHost()
        kernel = ForthKernel(host, engine_factory=NoPrelude)
        with self.assertLogs("forthkernel_session", level="ERROR"):
            await kernel.start()
        with self.assertRaises(SessionFatalError):
            await kernel.execute_request({"code": "1"})
        self.assertEqual(host.errors, [])
        self.assertEqual(kernel.execution_count, 0)
        kernel.dispose()


def run_all_tests() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    run_all_tests()
