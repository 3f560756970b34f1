"""
Citation validation for generated answers.

Checks the ``[n]`` markers in a draft against the chunks that were given
to the model, strips markers that point at no chunk, and flags sentences
that look like factual claims but carry no citation.

Deciding what "looks like a factual claim" is delegated to a
``ClaimDetector`` so the heuristic can be replaced without touching the
validation flow.
"""

import re
from typing import List, Optional, Protocol, Sequence, Set

import structlog

from api.models import Chunk, ValidationResult

logger = structlog.get_logger(__name__)

CITATION_RE = re.compile(r"\[(\d+)\]")
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

UNVERIFIED_DISCLAIMER = (
    "\n\n> **Nota**: Algunas afirmaciones en esta respuesta pueden no estar completamente "
    "respaldadas por las fuentes proporcionadas. Por favor, verifica la información crítica "
    "con los documentos originales."
)

# Uncited claims tolerated before the disclaimer is appended
MAX_UNCITED_CLAIMS_WITHOUT_DISCLAIMER = 2

# Share of significant words that must appear in the chunks in strict mode
STRICT_MIN_OVERLAP = 0.5

STOPWORDS = frozenset({
    "el", "la", "los", "las", "de", "del", "en", "y", "o", "a", "un", "una",
    "es", "son", "está", "están", "para", "con", "por", "que", "qué",
})

_TOKEN_STRIP = ".,;:!?¿¡()\"'*[]«»"


class ClaimDetector(Protocol):
    """Decides whether an uncited sentence asserts something checkable."""

    def looks_like_factual_claim(self, sentence: str) -> bool:
        ...


class HeuristicClaimDetector:
    """
    Spanish-language heuristic for factual claims.

    Questions, greetings, boilerplate lead-ins and very short sentences are
    never claims. Anything else containing a number, a capitalized word or
    an inventory term (price, area unit, unit type) is.
    """

    QUESTION_WORDS = ("qué", "cuál", "cuáles", "cómo", "cuándo", "dónde", "por qué", "quién", "quiénes")
    GREETING_WORDS = ("hola", "buenos días", "buenas tardes", "gracias", "saludos")
    BOILERPLATE_RE = re.compile(r"^(por favor|te sugiero|puedo ayudarte|si necesitas)", re.IGNORECASE)
    NUMBER_RE = re.compile(r"\d+")
    CAPITALIZED_RE = re.compile(r"[A-ZÁÉÍÓÚÑ][a-záéíóúñ]+")
    DOMAIN_TERM_RE = re.compile(r"(precio|mxn|pesos|metros|m²|departamento|lote|unidad|amenidad)", re.IGNORECASE)

    def __init__(self, min_length: int = 20):
        self.min_length = min_length

    def is_filler(self, sentence: str) -> bool:
        stripped = sentence.strip()
        lowered = stripped.lower()
        if "?" in lowered or lowered.startswith(self.QUESTION_WORDS):
            return True
        if any(word in lowered for word in self.GREETING_WORDS):
            return True
        if len(stripped) < self.min_length:
            return True
        return bool(self.BOILERPLATE_RE.match(stripped))

    def looks_like_factual_claim(self, sentence: str) -> bool:
        if self.is_filler(sentence):
            return False
        return bool(
            self.NUMBER_RE.search(sentence)
            or self.CAPITALIZED_RE.search(sentence)
            or self.DOMAIN_TERM_RE.search(sentence)
        )


def extract_citations(text: str) -> List[int]:
    """Distinct citation numbers in order of first appearance."""
    return list(dict.fromkeys(int(n) for n in CITATION_RE.findall(text)))


def strip_citations(text: str, numbers: Set[int]) -> str:
    """Remove every ``[n]`` marker whose number is in ``numbers``."""
    if not numbers:
        return text
    return CITATION_RE.sub(lambda m: "" if int(m.group(1)) in numbers else m.group(0), text)


def split_sentences(text: str) -> List[str]:
    return [s for s in SENTENCE_SPLIT_RE.split(text) if s.strip()]


def significant_words(sentence: str) -> List[str]:
    """Lowercased words of ``sentence`` without stopwords or short tokens."""
    words = []
    for token in CITATION_RE.sub(" ", sentence.lower()).split():
        word = token.strip(_TOKEN_STRIP)
        if len(word) > 2 and word not in STOPWORDS:
            words.append(word)
    return words


def is_supported_by(sentence: str, chunks_text: str) -> bool:
    """True if at least half of the sentence's significant words occur in ``chunks_text``."""
    words = significant_words(sentence)
    if not words:
        return True
    matching = sum(1 for word in words if word in chunks_text)
    return matching / len(words) >= STRICT_MIN_OVERLAP


class CitationValidator:
    """
    Validates a draft answer against the chunks it was generated from.

    Usage:
        validator = CitationValidator()
        result = validator.validate(draft, chunks)
        if not result.is_valid:
            ...
    """

    def __init__(self, detector: Optional[ClaimDetector] = None):
        self.detector = detector or HeuristicClaimDetector()

    def validate(self, draft: str, chunks: Sequence[Chunk], strict: bool = False) -> ValidationResult:
        """
        Check citations in ``draft``.

        Args:
            draft: Raw language model answer
            chunks: Chunks supplied to the model, in prompt order
            strict: Drop uncited sentences not supported by the chunk text

        Returns:
            ValidationResult with the filtered answer and any warnings
        """
        if not chunks:
            return ValidationResult(
                is_valid=False,
                filtered_answer=draft,
                warnings=["No hay fuentes disponibles para validar la respuesta"],
            )

        warnings: List[str] = []
        citations = extract_citations(draft)
        valid = {n for n in citations if 1 <= n <= len(chunks)}
        invalid = {n for n in citations if n not in valid}

        if invalid:
            listed = "], [".join(str(n) for n in sorted(invalid))
            warnings.append(
                f"Se encontraron citas inválidas: [{listed}]. Solo hay {len(chunks)} fuentes disponibles."
            )

        filtered = strip_citations(draft, invalid)
        uncited_claims = self._uncited_claims(draft)
        removed: List[str] = []
        filtered_strictly = strict and bool(uncited_claims)

        if filtered_strictly:
            filtered, removed = self._drop_unsupported(filtered, chunks)
            for sentence in removed:
                warnings.append(f'Se removió la siguiente afirmación no respaldada: "{sentence[:50]}..."')
            uncited_claims = [claim for claim in uncited_claims if claim not in removed]

        if uncited_claims:
            warnings.append(
                f"Se encontraron {len(uncited_claims)} afirmación(es) con información específica sin citas. "
                "Estas afirmaciones pueden no estar respaldadas por las fuentes proporcionadas."
            )

        filtered = filtered.strip()
        if len(uncited_claims) > MAX_UNCITED_CLAIMS_WITHOUT_DISCLAIMER:
            filtered += UNVERIFIED_DISCLAIMER

        if filtered_strictly:
            is_valid = bool(valid)
        else:
            # Any valid citation passes, even alongside uncited claims
            is_valid = bool(valid) or not uncited_claims

        if not is_valid or warnings:
            logger.info(
                "Answer validation",
                is_valid=is_valid,
                strict=strict,
                valid_citations=sorted(valid),
                invalid_citations=sorted(invalid),
                uncited_claims=len(uncited_claims),
                removed=len(removed),
            )

        return ValidationResult(
            is_valid=is_valid,
            filtered_answer=filtered,
            warnings=warnings,
            valid_citation_numbers=valid,
            invalid_citation_numbers=invalid,
            uncited_claims=uncited_claims,
            removed_sentences=removed,
        )

    def _uncited_claims(self, draft: str) -> List[str]:
        claims = []
        for sentence in split_sentences(draft):
            if CITATION_RE.search(sentence):
                continue
            if self.detector.looks_like_factual_claim(sentence):
                claims.append(sentence.strip())
        return claims

    @staticmethod
    def _drop_unsupported(text: str, chunks: Sequence[Chunk]):
        """Keep cited sentences and uncited ones backed by the chunk text."""
        chunks_text = " ".join(chunk.text for chunk in chunks).lower()
        kept: List[str] = []
        removed: List[str] = []
        for sentence in split_sentences(text):
            if CITATION_RE.search(sentence) or is_supported_by(sentence, chunks_text):
                kept.append(sentence)
            else:
                removed.append(sentence.strip())
        return " ".join(kept), removed
