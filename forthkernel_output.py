#!/usr/bin/env python3
# forthkernel_output.py
#
# Capture de la sortie texte du moteur Forth :
# - LineBuffer : découpe l'émission brute en lignes complètes (chunks "stdout")
# - CaptureWindow : redirection temporaire vers une chaîne, pour les requêtes
#   internes du kernel (liste des mots, ligne de statut)
#
# Aucune I/O ici : la destination des lignes est un simple callable.

from __future__ import annotations

import logging
import sys
import unittest
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List

from forthkernel_engine import ErrorCode, ForthEngine, is_success

log = logging.getLogger(__name__)

STREAM_NAME = "stdout"


class KernelError(RuntimeError):
    """Racine des erreurs levées par le kernel (hors erreurs VM)."""


class CaptureError(KernelError):
    """Fenêtre de capture déjà ouverte (capture réentrante)."""


def _code_name(result: Any) -> str:
    try:
        return ErrorCode(result).name
    except ValueError:
        return str(result)


class LineBuffer:
    """
    Accumule le texte émis et pousse une ligne complète (newline inclus)
    vers `sink` dès qu'elle est terminée. flush() pousse la ligne partielle.
    """

    def __init__(self, sink: Callable[[str], None]) -> None:
        self.sink = sink
        self._partial: List[str] = []

    def write(self, text: str) -> None:
        while text:
            idx = text.find("\n")
            if idx < 0:
                self._partial.append(text)
                return
            self._partial.append(text[:idx + 1])
            line = "".join(self._partial)
            self._partial.clear()
            self.sink(line)
            text = text[idx + 1:]

    __call__ = write

    @property
    def pending(self) -> str:
        return "".join(self._partial)

    def flush(self) -> None:
        if self._partial:
            line = "".join(self._partial)
            self._partial.clear()
            self.sink(line)


class CaptureWindow:
    """
    Capture « vers une chaîne » : remplace le sink du moteur par un
    accumulateur, le temps d'une interprétation synchrone.

    Le sink d'origine est restauré dans tous les cas (y compris sur
    exception), et rien de ce qui est émis pendant la fenêtre n'atteint
    le flux visible.
    """

    def __init__(self) -> None:
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @contextmanager
    def redirect(self, engine: Any) -> Iterator[List[str]]:
        if self._active:
            raise CaptureError("capture window already open")
        acc: List[str] = []
        previous = engine.on_emit
        self._active = True
        engine.on_emit = acc.append
        try:
            yield acc
        finally:
            engine.on_emit = previous
            self._active = False

    def capture(self, engine: Any, code: str) -> str:
        with self.redirect(engine) as acc:
            result = engine.interpret(code, True)
        text = "".join(acc)
        if not is_success(result):
            log.warning("capture query %r failed with %s: %r", code, _code_name(result), text)
        return text


# ============================================================
# Tests unitaires
# ============================================================

class TestLineBuffer(unittest.TestCase):
    def setUp(self) -> None:
        self.lines: List[str] = []
        self.buf = LineBuffer(self.lines.append)

    def test_complete_lines_keep_newline(self):
        self.buf.write("abc\ndef\n")
        self.assertEqual(self.lines, ["abc\n", "def\n"])
        self.assertEqual(self.buf.pending, "")

    def test_partial_line_waits_for_newline(self):
        self.buf.write("1 2 ")
        self.buf.write("3")
        self.assertEqual(self.lines, [])
        self.buf.write(" ok\nrest")
        self.assertEqual(self.lines, ["1 2 3 ok\n"])
        self.assertEqual(self.buf.pending, "rest")

    def test_flush_forces_partial_line(self):
        self.buf("25 ")
        self.buf.flush()
        self.buf.flush()
        self.assertEqual(self.lines, ["25 "])

    def test_empty_lines(self):
        self.buf.write("\n\n")
        self.assertEqual(self.lines, ["\n", "\n"])


class TestCaptureWindow(unittest.TestCase):
    def setUp(self) -> None:
        self.visible: List[str] = []
        self.engine = ForthEngine().load()
        self.engine.on_emit = self.visible.append
        self.window = CaptureWindow()

    def test_capture_returns_text_and_hides_it(self):
        text = self.window.capture(self.engine, '1 2 + . "hello" TYPE CR')
        self.assertEqual(text, "3 hello\n")
        self.assertEqual(self.visible, [])
        self.engine.interpret("7 .", True)
        self.assertEqual(self.visible, ["7 "])

    def test_sink_restored_after_vm_error(self):
        text = self.window.capture(self.engine, "NOPE")
        self.assertIn("undefined word", text)
        self.assertEqual(self.visible, [])
        self.assertFalse(self.window.active)
        self.engine.interpret("1 .", True)
        self.assertEqual(self.visible, ["1 "])

    def test_sink_restored_after_python_exception(self):
        original = self.engine.on_emit
        with self.assertRaises(ValueError):
            with self.window.redirect(self.engine):
                raise ValueError("boom")
        self.assertIs(self.engine.on_emit, original)
        self.assertFalse(self.window.active)

    def test_reentrant_capture_is_refused(self):
        with self.window.redirect(self.engine):
            with self.assertRaises(CaptureError):
                self.window.capture(self.engine, "1 .")
        self.assertEqual(self.window.capture(self.engine, "2 ."), "2 ")

    def test_failure_with_foreign_error_code(self):
        class OddEngine:
            def __init__(self) -> None:
                self.on_emit: Callable[[str], None] = print

            def interpret(self, code: str, silent: bool = False) -> int:
                self.on_emit("odd\n")
                return -999

        with self.assertLogs(log, level="WARNING") as cm:
            text = self.window.capture(OddEngine(), "X")
        self.assertEqual(text, "odd\n")
        self.assertIn("-999", cm.output[0])


def run_all_tests() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    run_all_tests()
