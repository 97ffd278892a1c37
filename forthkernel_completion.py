#!/usr/bin/env python3
# forthkernel_completion.py
#
# Complétion interactive :
# - WordSnapshot : photo des noms du dictionnaire, remplacée d'un bloc
#   après chaque exécution réussie en mode interprétation
# - complete() : préfixe sous le curseur, candidats = photo + noms déclarés
#   dans le buffer en cours d'édition (après : CONSTANT VARIABLE CREATE)
#
# Pas d'accès à la VM ici : tout est calculé sur des chaînes.

from __future__ import annotations

import re
import sys
import unittest
from typing import Any, Dict, Iterable, List, Tuple

DEFINING_WORDS = (":", "CONSTANT", "VARIABLE", "CREATE")

# une chaîne "..." compte pour un seul token
_TOKEN_RE = re.compile(r'"[^"]*"?|\S+')
_PARTIAL_RE = re.compile(r"\S*\Z")


class WordSnapshot:
    """Noms distincts, dans l'ordre de la liste WORDS ; jamais mis à jour partiellement."""

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._names: Tuple[str, ...] = tuple(dict.fromkeys(names))

    def refresh(self, listing: str) -> None:
        self._names = tuple(dict.fromkeys(listing.split()))

    @property
    def names(self) -> Tuple[str, ...]:
        return self._names

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._names


def partial_word(code: str, cursor_pos: int) -> Tuple[int, str]:
    """(début, texte) du mot partiel qui se termine au curseur."""
    head = code[:cursor_pos]
    m = _PARTIAL_RE.search(head)
    return m.start(), m.group(0)


def declared_names(code: str, cursor_pos: int = -1) -> List[str]:
    """
    Noms introduits par un mot de définition dans `code`.
    Le token qui se termine au curseur (en cours de frappe) est ignoré.
    """
    tokens = list(_TOKEN_RE.finditer(code))
    names: List[str] = []
    for i, m in enumerate(tokens[:-1]):
        if m.group(0).upper() not in DEFINING_WORDS:
            continue
        nxt = tokens[i + 1]
        if nxt.end() == cursor_pos or nxt.group(0).startswith('"'):
            continue
        names.append(nxt.group(0))
    return names


def complete(snapshot: WordSnapshot, code: str, cursor_pos: int) -> Dict[str, Any]:
    cursor_pos = max(0, min(cursor_pos, len(code)))
    start, prefix = partial_word(code, cursor_pos)
    candidates = set(snapshot.names)
    candidates.update(declared_names(code, cursor_pos))
    matches = sorted(name for name in candidates if name.startswith(prefix))
    return {
        "matches": matches,
        "cursor_start": start,
        "cursor_end": cursor_pos,
        "metadata": {},
        "status": "ok",
    }


# ============================================================
# Tests unitaires
# ============================================================

class TestWordSnapshot(unittest.TestCase):
    def test_refresh_replaces_everything(self):
        snap = WordSnapshot(["OLD"])
        snap.refresh("SQUARE DUP  DROP\nDUP")
        self.assertEqual(snap.names, ("SQUARE", "DUP", "DROP"))
        self.assertNotIn("OLD", snap)
        self.assertEqual(len(snap), 3)


class TestPartialWord(unittest.TestCase):
    def test_partial_word_boundaries(self):
        self.assertEqual(partial_word("5 SQ", 4), (2, "SQ"))
        self.assertEqual(partial_word("SQ", 2), (0, "SQ"))
        self.assertEqual(partial_word("1 2\n DU", 7), (5, "DU"))
        self.assertEqual(partial_word("DUP ", 4), (4, ""))
        self.assertEqual(partial_word("DUP DROP", 2), (0, "DU"))


class TestDeclaredNames(unittest.TestCase):
    def test_defining_words_are_case_insensitive(self):
        code = ': square dup * ; 10 constant Ten variable X create BUF'
        self.assertEqual(declared_names(code), ["square", "Ten", "X", "BUF"])

    def test_token_being_typed_is_skipped(self):
        code = ": SQ"
        self.assertEqual(declared_names(code, len(code)), [])
        self.assertEqual(declared_names(code), ["SQ"])

    def test_string_literals_are_not_names(self):
        self.assertEqual(declared_names('": FAKE" TYPE : REAL ;'), ["REAL"])


class TestComplete(unittest.TestCase):
    def setUp(self) -> None:
        self.snap = WordSnapshot(["DUP", "DROP", "SQUARE", "SWAP"])

    def test_prefix_from_snapshot(self):
        reply = complete(self.snap, "5 SQ", 4)
        self.assertEqual(reply["matches"], ["SQUARE"])
        self.assertEqual(reply["cursor_start"], 2)
        self.assertEqual(reply["cursor_end"], 4)
        self.assertEqual(reply["status"], "ok")
        self.assertEqual(reply["metadata"], {})

    def test_merges_names_declared_in_buffer(self):
        code = ": CUBE DUP DUP * * ;\n3 CU"
        reply = complete(self.snap, code, len(code))
        self.assertEqual(reply["matches"], ["CUBE"])

    def test_unterminated_definition(self):
        code = ": TRIPLE 3 * \nTR"
        reply = complete(WordSnapshot(), code, len(code))
        self.assertEqual(reply["matches"], ["TRIPLE"])

    def test_prefix_is_case_sensitive(self):
        reply = complete(self.snap, "dr", 2)
        self.assertEqual(reply["matches"], [])

    def test_empty_prefix_lists_all_sorted(self):
        reply = complete(self.snap, "", 0)
        self.assertEqual(reply["matches"], ["DROP", "DUP", "SQUARE", "SWAP"])

    def test_cursor_is_clamped(self):
        reply = complete(self.snap, "SW", 99)
        self.assertEqual(reply["matches"], ["SWAP"])
        self.assertEqual(reply["cursor_end"], 2)


def run_all_tests() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    run_all_tests()
