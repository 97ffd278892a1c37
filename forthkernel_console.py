#!/usr/bin/env python3
# forthkernel_console.py
#
# Console terminal pour le kernel Forth :
# - ConsoleHost : un KernelHost qui affiche flux / résultats / erreurs
# - LocalContents : service Contents sur un répertoire local (pour INCLUDE)
# - ConsoleREPL : boucle prompt_toolkit, complétion via le kernel
# - toutes les commandes console commencent par:  :kernel ...
#
# Commandes console :
#   :kernel help     -> aide
#   :kernel info     -> descripteur kernel_info
#   :kernel words    -> photo du dictionnaire
#   :kernel quit     -> quitte la console
#
# Tests intégrés :
#   python forthkernel_console.py --test

from __future__ import annotations

import argparse
import asyncio
import io
import logging
import os
import shlex
import sys
import tempfile
import textwrap
import threading
import unittest
from contextlib import redirect_stdout
from typing import Any, Dict, Iterable, List, Optional, TextIO

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import CompleteEvent, Completer, Completion
from prompt_toolkit.document import Document
from prompt_toolkit.patch_stdout import patch_stdout

from forthkernel_capabilities import Contents, KernelHost
from forthkernel_kernel import ForthKernel
from forthkernel_session import KernelOptions, SessionFatalError

log = logging.getLogger(__name__)

KERNEL_CMDS = ["help", "info", "words", "quit"]


class ConsoleHost(KernelHost):
    """
    Hôte terminal : tout ce que le kernel publie est écrit sur `out`
    (sys.stdout par défaut, résolu à chaque écriture pour patch_stdout).
    """

    def __init__(self, out: Optional[TextIO] = None) -> None:
        self.out = out
        self._at_line_start = True
        self._lock = threading.Lock()

    def _write(self, text: str) -> None:
        if not text:
            return
        stream = self.out or sys.stdout
        with self._lock:
            stream.write(text)
            stream.flush()
            self._at_line_start = text.endswith("\n")

    def _write_line(self, text: str) -> None:
        if not self._at_line_start:
            self._write("\n")
        self._write(text + "\n")

    def publish_stream(self, name: str, text: str) -> None:
        self._write(text)

    def publish_execute_result(self, content: Dict[str, Any]) -> None:
        self._write_line(content.get("data", {}).get("text/plain", ""))

    def publish_execute_error(self, content: Dict[str, Any]) -> None:
        self._write_line(content.get("evalue", "Error"))

    def alert(self, text: str) -> None:
        self._write_line(f"[alert] {text}")


class LocalContents(Contents):
    """
    Service Contents sur un répertoire local.
    Les chemins sont relatifs à `root` ("/x.fs" désigne root/x.fs).
    """

    def __init__(self, root: str = ".") -> None:
        self.root = os.path.abspath(root)

    def local_path(self, path: str) -> str:
        full = os.path.normpath(os.path.join(self.root, path.lstrip("/")))
        if full != self.root and not full.startswith(self.root + os.sep):
            raise PermissionError(f"{path}: outside of {self.root}")
        return full

    def _read(self, full: str) -> str:
        with open(full, "r", encoding="utf-8") as f:
            return f.read()

    async def get(self, path: str, content: bool = True) -> Dict[str, Any]:
        full = self.local_path(path)
        text = await asyncio.to_thread(self._read, full) if content else None
        return {
            "name": os.path.basename(full),
            "path": path,
            "type": "file",
            "format": "text" if content else None,
            "content": text,
        }


class ForthKernelCompleter(Completer):
    """Complétion prompt_toolkit : :kernel ... ou mots Forth via ForthKernel.complete."""

    def __init__(self, kernel: ForthKernel) -> None:
        self.kernel = kernel

    def get_completions(self, document: Document, complete_event: CompleteEvent) -> Iterable[Completion]:
        before = document.text_before_cursor
        stripped = before.lstrip()

        if stripped.startswith(":kernel"):
            after = stripped[len(":kernel"):]
            if after and not after[0].isspace():
                return
            fragment = after.strip()
            if " " in fragment:
                return
            for name in KERNEL_CMDS:
                if name.startswith(fragment):
                    yield Completion(name, start_position=-len(fragment))
            return

        reply = self.kernel.complete(document.text, document.cursor_position)
        start = reply["cursor_start"] - reply["cursor_end"]
        for name in reply["matches"]:
            yield Completion(name, start_position=start)


class ConsoleREPL:
    """
    REPL texte par-dessus ForthKernel.

    - les lignes sans préfixe partent en execute_request
    - :kernel help / info / words / quit
    - la sortie du kernel passe par ConsoleHost
    """

    def __init__(self,
                 options: Optional[KernelOptions] = None,
                 contents: Optional[Contents] = None,
                 out: Optional[TextIO] = None) -> None:
        self.host = ConsoleHost(out)
        self.kernel = ForthKernel(self.host, options, contents=contents)

    def prompt(self) -> str:
        return f"[{self.kernel.execution_count + 1}] forth> "

    async def execute(self, line: str) -> Dict[str, Any]:
        return await self.kernel.execute_request({"code": line})

    # ------------------------------------------------------------------
    # Commandes :kernel ...
    # ------------------------------------------------------------------

    async def handle_kernel_command(self, line: str) -> bool:
        """
        Traite une ligne commençant par ':kernel'.
        Peut lever SystemExit pour :kernel quit.
        """
        rest = line.strip()[len(":kernel"):].strip()
        try:
            parts = shlex.split(rest)
        except ValueError as e:
            print(f"parse error in :kernel command: {e}")
            return True

        if not parts or parts[0] in ("help", "?"):
            self._print_help()
            return True

        cmd = parts[0]
        if cmd == "info":
            info = await self.kernel.kernel_info_request()
            lang = info["language_info"]
            print(f"{info['implementation']} {info['implementation_version']}"
                  f" (protocol {info['protocol_version']})")
            print(f"language: {lang['name']} {lang['version']} ({lang['file_extension']}, {lang['mimetype']})")
            for link in info["help_links"]:
                print(f"  {link['text']}: {link['url']}")
            return True

        if cmd == "words":
            names = sorted(self.kernel.session.snapshot.names)
            print(textwrap.fill(" ".join(names), width=78) if names else "(no words)")
            return True

        if cmd in ("quit", "exit"):
            print("bye.")
            raise SystemExit(0)

        print(f"unknown kernel command: {cmd!r}")
        self._print_help()
        return True

    def _print_help(self) -> None:
        print("Console commands (prefix with :kernel):")
        print("  :kernel info               - show kernel info")
        print("  :kernel words              - list known words")
        print("  :kernel help               - this help")
        print("  :kernel quit               - exit console")

    # ------------------------------------------------------------------
    # Boucle principale (PromptSession + patch_stdout)
    # ------------------------------------------------------------------

    async def run(self) -> int:
        await self.kernel.start()
        try:
            await self.kernel.session.wait_ready()
        except SessionFatalError as e:
            print(f"Forth kernel failed to start: {e}")
            return 1

        info = await self.kernel.kernel_info_request()
        print(info["banner"])
        print("Type Forth code to execute it.  (:kernel help for help)")

        session: PromptSession = PromptSession(completer=ForthKernelCompleter(self.kernel))
        try:
            with patch_stdout():
                while True:
                    try:
                        line = await session.prompt_async(self.prompt())
                    except EOFError:
                        print("\nEOF -> quitting.")
                        break
                    except KeyboardInterrupt:
                        print("\nKeyboardInterrupt (Ctrl-C). Use ':kernel quit' to exit.")
                        continue

                    if not line.strip():
                        continue

                    if line.strip().startswith(":kernel"):
                        try:
                            await self.handle_kernel_command(line)
                        except SystemExit:
                            break
                        continue

                    await self.execute(line)
        finally:
            self.kernel.dispose()
        return 0


# ======================================================================
# Ligne de commande
# ======================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="forthkernel-console",
                                     description="Interactive console for the Forth kernel.")
    parser.add_argument("--case-sensitive", action="store_true",
                        help="do not upper-case input before interpreting it")
    parser.add_argument("--no-eval", action="store_true",
                        help="do not bind EVAL (Python expression evaluation)")
    parser.add_argument("--verbose", action="store_true",
                        help="keep the interpreter's own ' ok' output")
    parser.add_argument("--base-dir", metavar="DIR", default=None,
                        help="enable INCLUDE, reading files from DIR")
    parser.add_argument("--base-path", metavar="PATH", default="",
                        help="prefix for relative INCLUDE paths inside DIR")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="logging level (default: WARNING)")
    parser.add_argument("--test", action="store_true", help=argparse.SUPPRESS)
    return parser


def options_from_args(args: argparse.Namespace) -> KernelOptions:
    return KernelOptions(
        allow_eval=not args.no_eval,
        silent=not args.verbose,
        case_sensitive=args.case_sensitive,
        base_path=args.base_path,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.test:
        run_all_tests()
        return 0
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(levelname)s %(name)s: %(message)s")
    contents = LocalContents(args.base_dir) if args.base_dir else None
    repl = ConsoleREPL(options_from_args(args), contents)
    return asyncio.run(repl.run())


# ======================================================================
# Tests intégrés (python forthkernel_console.py --test)
# ======================================================================

class TestConsoleHost(unittest.TestCase):
    def test_result_goes_on_its_own_line(self):
        out = io.StringIO()
        host = ConsoleHost(out)
        host.publish_stream("stdout", "25 ")
        host.publish_execute_result({"data": {"text/plain": "<0> ok"}})
        host.publish_stream("stdout", "line\n")
        host.publish_execute_error({"evalue": "Error: Abort (-1)"})
        host.alert("hi")
        self.assertEqual(out.getvalue(), "25 \n<0> ok\nline\nError: Abort (-1)\n[alert] hi\n")


class TestLocalContents(unittest.IsolatedAsyncioTestCase):
    async def test_get_reads_relative_to_root(self):
        with tempfile.TemporaryDirectory() as root:
            os.makedirs(os.path.join(root, "lib"))
            with open(os.path.join(root, "lib", "sq.fs"), "w", encoding="utf-8") as f:
                f.write(": SQ DUP * ;\n")
            contents = LocalContents(root)
            model = await contents.get("lib/sq.fs")
            self.assertEqual(model["content"], ": SQ DUP * ;\n")
            model = await contents.get("/lib/sq.fs")
            self.assertEqual(model["name"], "sq.fs")
            with self.assertRaises(FileNotFoundError):
                await contents.get("lib/missing.fs")
            with self.assertRaises(PermissionError):
                await contents.get("../outside.fs")


class TestCompleter(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.repl = ConsoleREPL(out=io.StringIO())
        await self.repl.kernel.start()
        self.completer = ForthKernelCompleter(self.repl.kernel)

    async def asyncTearDown(self) -> None:
        self.repl.kernel.dispose()

    def complete(self, text: str) -> List[Completion]:
        return list(self.completer.get_completions(Document(text, len(text)), CompleteEvent()))

    async def test_forth_words(self):
        await self.repl.execute(": SQUARE DUP * ;")
        comps = self.complete("5 SQ")
        self.assertEqual([c.text for c in comps], ["SQUARE"])
        self.assertEqual(comps[0].start_position, -2)

    async def test_kernel_commands(self):
        self.assertEqual([c.text for c in self.complete(":kernel w")], ["words"])
        self.assertEqual(len(self.complete(":kernel ")), len(KERNEL_CMDS))
        self.assertEqual(self.complete(":kernel words x"), [])


class TestKernelCommands(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.out = io.StringIO()
        self.repl = ConsoleREPL(out=self.out)
        await self.repl.kernel.start()

    async def asyncTearDown(self) -> None:
        self.repl.kernel.dispose()

    async def command(self, line: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            await self.repl.handle_kernel_command(line)
        return buf.getvalue()

    async def test_execute_renders_output_and_status(self):
        self.assertEqual(self.repl.prompt(), "[1] forth> ")
        await self.repl.execute("2 3 + .")
        self.assertEqual(self.out.getvalue(), "5 \n<0> ok\n")
        self.assertEqual(self.repl.prompt(), "[2] forth> ")

    async def test_info_and_words(self):
        self.assertIn("forthkernel", await self.command(":kernel info"))
        await self.repl.execute(": CUBE DUP DUP * * ;")
        self.assertIn("CUBE", await self.command(":kernel words"))

    async def test_help_and_unknown(self):
        self.assertIn(":kernel quit", await self.command(":kernel"))
        self.assertIn("unknown kernel command", await self.command(":kernel frobnicate"))

    async def test_quit_raises_systemexit(self):
        with self.assertRaises(SystemExit):
            await self.command(":kernel quit")


class TestCommandLine(unittest.TestCase):
    def test_flags_map_to_options(self):
        args = build_parser().parse_args(["--case-sensitive", "--no-eval", "--verbose",
                                          "--base-dir", "/tmp", "--base-path", "nb"])
        self.assertEqual(options_from_args(args),
                         KernelOptions(allow_eval=False, silent=False, case_sensitive=True, base_path="nb"))
        self.assertEqual(args.base_dir, "/tmp")

    def test_defaults(self):
        args = build_parser().parse_args([])
        self.assertEqual(options_from_args(args), KernelOptions())
        self.assertIsNone(args.base_dir)
        self.assertEqual(args.log_level, "WARNING")


def run_all_tests() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    sys.exit(main())
