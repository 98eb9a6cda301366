"""Reduce words to dictionary forms for indexing and querying.

Text is lowercased and split on every run of characters outside the Latin
and Cyrillic alphabets. Each token is routed to an analyzer for its alphabet:
Cyrillic words go to ``pymorphy3``; Latin words go to the NLTK WordNet
lemmatizer, tagged with the averaged perceptron tagger. Prepositions,
conjunctions and interjections are dropped. The first normal form of the
remaining tokens becomes the lemma.
"""

from __future__ import annotations

import re
import threading
from collections import Counter
from dataclasses import dataclass
from functools import lru_cache

import nltk
import pymorphy3
import structlog
from nltk.corpus.reader.wordnet import ADJ, ADV, NOUN, VERB
from nltk.stem import WordNetLemmatizer

from errors import LanguageDataUnavailable, UnsupportedCharacter
from knowledge.text import html_to_text

logger = structlog.get_logger(__name__)

_SEPARATORS = re.compile(r"[^a-zа-яё]+")
_LATIN = re.compile(r"[a-z]+")
_CYRILLIC = re.compile(r"[а-яё]+")

# OpenCorpora part-of-speech tags
RUSSIAN_FUNCTIONAL_POS = frozenset({"PREP", "CONJ", "INTJ"})
# Penn Treebank tags
ENGLISH_FUNCTIONAL_POS = frozenset({"IN", "CC", "UH", "TO"})

_WORDNET_POS = {
    "NN": NOUN,
    "VB": VERB,
    "JJ": ADJ,
    "RB": ADV,
}


@dataclass(frozen=True)
class Analysis:
    """Normal forms of a word and the grammar tag of its likeliest reading."""

    normal_forms: tuple[str, ...]
    tag: str
    functional: bool


class RussianAnalyzer:
    """Morphology of Cyrillic words backed by ``pymorphy3``."""

    alphabet = _CYRILLIC

    def __init__(self) -> None:
        self._morph = pymorphy3.MorphAnalyzer(lang="ru")

    def analyze(self, word: str) -> Analysis:
        if not self.alphabet.fullmatch(word):
            raise UnsupportedCharacter(f"{word!r} is not a Russian word")
        parses = self._morph.parse(word)
        normal_forms = tuple(dict.fromkeys(p.normal_form for p in parses))
        best = parses[0].tag
        return Analysis(
            normal_forms=normal_forms,
            tag=str(best),
            functional=best.POS in RUSSIAN_FUNCTIONAL_POS,
        )


class EnglishAnalyzer:
    """Morphology of Latin words backed by NLTK WordNet."""

    alphabet = _LATIN

    RESOURCES = (
        ("corpora/wordnet", "wordnet"),
        ("taggers/averaged_perceptron_tagger_eng", "averaged_perceptron_tagger_eng"),
    )

    def __init__(self) -> None:
        for path, package in self.RESOURCES:
            try:
                nltk.data.find(path)
            except LookupError:
                logger.info("nltk_resource_download", package=package)
                if not nltk.download(package, quiet=True):
                    logger.error("nltk_resource_unavailable", package=package)
                    raise LanguageDataUnavailable(
                        f"NLTK resource {package!r} is not installed and could not be downloaded"
                    ) from None
        self._lemmatizer = WordNetLemmatizer()

    def analyze(self, word: str) -> Analysis:
        if not self.alphabet.fullmatch(word):
            raise UnsupportedCharacter(f"{word!r} is not an English word")
        tag = nltk.pos_tag([word])[0][1]
        preferred = _WORDNET_POS.get(tag[:2], NOUN)
        candidates = [preferred, *(pos for pos in _WORDNET_POS.values() if pos != preferred)]
        normal_forms = tuple(
            dict.fromkeys(self._lemmatizer.lemmatize(word, pos) for pos in candidates)
        )
        return Analysis(
            normal_forms=normal_forms,
            tag=tag,
            functional=tag in ENGLISH_FUNCTIONAL_POS,
        )


class Lemmatizer:
    """Text to ``{lemma: occurrences}`` and single word to lemma.

    Analyzers are created on first use, so a corpus in one language never
    loads the dictionaries of the other.
    """

    def __init__(
        self,
        russian: RussianAnalyzer | None = None,
        english: EnglishAnalyzer | None = None,
        *,
        cache_size: int = 100_000,
    ) -> None:
        self._russian = russian
        self._english = english
        self._lock = threading.Lock()
        self._cached_lemma = lru_cache(maxsize=cache_size)(self._resolve)

    def _analyzer_for(self, word: str) -> RussianAnalyzer | EnglishAnalyzer:
        with self._lock:
            if _LATIN.fullmatch(word):
                if self._english is None:
                    self._english = EnglishAnalyzer()
                return self._english
            if self._russian is None:
                self._russian = RussianAnalyzer()
            return self._russian

    def _resolve(self, word: str) -> str:
        if not word or not (_LATIN.match(word) or _CYRILLIC.match(word)):
            return ""
        try:
            analysis = self._analyzer_for(word).analyze(word)
        except UnsupportedCharacter as exc:
            logger.debug("lemma_skipped", word=word, reason=str(exc))
            return ""
        if analysis.functional or not analysis.normal_forms:
            return ""
        return analysis.normal_forms[0]

    def lemma_of(self, word: str) -> str:
        """Return the lemma of ``word`` or ``""`` if the word is not indexable."""

        return self._cached_lemma(word.strip().lower())

    def tokens(self, text: str) -> list[str]:
        return [token for token in _SEPARATORS.split(text.lower()) if token]

    def lemmas_from(self, text: str) -> dict[str, int]:
        """Count lemmas in ``text``; markup is stripped first."""

        counts: Counter[str] = Counter()
        for token in self.tokens(html_to_text(text)):
            lemma = self._cached_lemma(token)
            if lemma:
                counts[lemma] += 1
        return dict(counts)


@lru_cache(maxsize=1)
def get_lemmatizer() -> Lemmatizer:
    """Return the process-wide lemmatizer."""

    return Lemmatizer()
