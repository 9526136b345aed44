import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .predicates import And, Clause, Equals, FullText, Fuzzy, Like, Or, Regex

logger = logging.getLogger(__name__)


SEARCH_MODES = ("mixed", "or", "and", "exact", "regex", "fuzzy")
SEARCH_CONDITIONS = ("contains", "startswith", "like", "equals", "fuzzy")

MIXED_TOKEN_PATTERN = re.compile(r'"([^"]+)"|(\S+)')
WORD_CHAR = re.compile(r"\w")


class TokenKind(Enum):
    PHRASE = "phrase"
    WORD = "word"
    INCLUDE = "include"
    EXCLUDE = "exclude"
    COLUMN = "column"


@dataclass
class SearchToken:
    kind: TokenKind
    text: str
    column: Optional[str] = None


def tokenize_mixed(term: str) -> List[SearchToken]:
    """
    Split a mixed-mode query into quoted phrases, ``+word``, ``-word``,
    ``Column:value`` and bare words.
    """
    tokens = []
    for match in MIXED_TOKEN_PATTERN.finditer(term or ""):
        phrase, word = match.group(1), match.group(2)
        if phrase is not None:
            tokens.append(SearchToken(TokenKind.PHRASE, phrase))
        elif word.startswith("-") and len(word) > 1:
            tokens.append(SearchToken(TokenKind.EXCLUDE, word[1:]))
        elif word.startswith("+") and len(word) > 1:
            tokens.append(SearchToken(TokenKind.INCLUDE, word[1:]))
        elif ":" in word:
            column, _, value = word.partition(":")
            if column and value:
                tokens.append(SearchToken(TokenKind.COLUMN, value, column))
            else:
                tokens.append(SearchToken(TokenKind.WORD, word))
        else:
            tokens.append(SearchToken(TokenKind.WORD, word))
    return tokens


def quote_fts(text: str) -> str:
    """Quote a term as an FTS5 phrase; embedded double quotes are dropped."""
    cleaned = text.replace('"', "").strip()
    return f'"{cleaned}"' if cleaned else ""


def is_indexable(text: str) -> bool:
    """The FTS tokenizer drops punctuation, so such terms never match the index."""
    return bool(WORD_CHAR.search(text or ""))


def split_terms(term: str, mode: str) -> List[str]:
    term = term.strip()
    if mode == "exact":
        return [term] if term else []
    return term.split()


class SearchCompiler:
    """Compile the global search box of a request into a single clause."""

    def __init__(self, store, indexes):
        self.store = store
        self.indexes = indexes

    def compile(self, term, mode="mixed", condition="contains") -> Optional[Clause]:
        term = (term or "").strip()
        if not term:
            return None

        idents = self.store.idents
        if mode != "regex" and (condition == "fuzzy" or mode == "fuzzy"):
            clauses = [Or([Fuzzy(c, t) for c in idents]) for t in split_terms(term, mode)]
            return self._join(clauses, mode)

        if mode == "regex":
            return Or([Regex(c, term) for c in idents])

        if condition != "contains":
            clauses = [
                Or([self._compare(c, t, condition) for c in idents])
                for t in split_terms(term, mode)
            ]
            return self._join(clauses, mode)

        if not self.indexes.ensure_search_index():
            logger.debug("Search index not ready, scanning rows directly")
            return self._like_fallback(term, mode)
        return self._full_text(term, mode)

    @staticmethod
    def _join(clauses, mode):
        return Or(clauses) if mode == "or" else And(clauses)

    @staticmethod
    def _compare(ident, term, condition):
        if condition == "startswith":
            return Like(ident, f"{term}%")
        if condition == "like":
            return Like(ident, term)
        if condition == "equals":
            return Equals(ident, term)
        return Like(ident, f"%{term}%")

    def _any_column_contains(self, text):
        return Or([Like(c, f"%{text}%") for c in self.store.idents])

    def _no_column_contains(self, text):
        return And([Like(c, f"%{text}%", negate=True) for c in self.store.idents])

    def _column_token(self, token):
        column = self.store.resolve_casefold(token.column)
        if column is None:
            return None
        return Like(column.ident, f"%{token.text}%")

    def _like_fallback(self, term, mode) -> Clause:
        if mode != "mixed":
            clauses = [self._any_column_contains(t) for t in split_terms(term, mode)]
            return self._join(clauses, mode)

        clauses = []
        for token in tokenize_mixed(term):
            if token.kind == TokenKind.EXCLUDE:
                clauses.append(self._no_column_contains(token.text))
                continue
            if token.kind == TokenKind.COLUMN:
                clause = self._column_token(token)
                if clause is not None:
                    clauses.append(clause)
                    continue
                token = SearchToken(TokenKind.WORD, f"{token.column}:{token.text}")
            clauses.append(self._any_column_contains(token.text))
        return And(clauses)

    def _full_text(self, term, mode) -> Optional[Clause]:
        if mode == "exact":
            if not is_indexable(term):
                return self._any_column_contains(term)
            phrase = quote_fts(term)
            return FullText(phrase) if phrase else None

        if mode in ("or", "and"):
            terms = term.split()
            clauses = [self._any_column_contains(t) for t in terms if not is_indexable(t)]
            phrases = [p for p in (quote_fts(t) for t in terms if is_indexable(t)) if p]
            if phrases:
                clauses.append(FullText(f" {mode.upper()} ".join(phrases)))
            if not clauses:
                return None
            return clauses[0] if len(clauses) == 1 else self._join(clauses, mode)

        # Mixed mode: every positive term must be present, exclusions must not
        positive = []
        negative = []
        scan_clauses = []
        for token in tokenize_mixed(term):
            if token.kind == TokenKind.COLUMN:
                clause = self._column_token(token)
                if clause is not None:
                    scan_clauses.append(clause)
                    continue
                token = SearchToken(TokenKind.WORD, f"{token.column}:{token.text}")
            if not is_indexable(token.text):
                if token.kind == TokenKind.EXCLUDE:
                    scan_clauses.append(self._no_column_contains(token.text))
                else:
                    scan_clauses.append(self._any_column_contains(token.text))
                continue
            phrase = quote_fts(token.text)
            if not phrase:
                continue
            if token.kind == TokenKind.EXCLUDE:
                negative.append(phrase)
            else:
                positive.append(phrase)

        clauses = list(scan_clauses)
        if positive:
            query = " AND ".join(positive)
            if negative:
                query = f"({query})" + "".join(f" NOT {n}" for n in negative)
            clauses.append(FullText(query))
        elif negative:
            clauses.append(FullText(" OR ".join(negative), negate=True))
        return And(clauses) if clauses else None
