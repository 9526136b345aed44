import pytest

from timeline_explorer.config import EngineConfig
from timeline_explorer.search.predicates import And, Equals, FullText, Fuzzy, Like, Or, Regex
from timeline_explorer.search.search_compiler import (
    SearchCompiler,
    TokenKind,
    quote_fts,
    split_terms,
    tokenize_mixed,
)
from timeline_explorer.store.indexes import IndexManager
from timeline_explorer.store.loader import BulkLoader
from timeline_explorer.store.schema import TableStore
from timeline_explorer.store.sql_functions import open_connection


@pytest.fixture
def store(tmp_path):
    conn = open_connection(tmp_path / "search.db")
    table = TableStore(conn, EngineConfig())
    table.create_store(["datetime", "EventID"])
    BulkLoader(table).insert_arrays([["2024-01-01", "4624"]])
    table.finalize_import()
    yield table
    conn.close()


@pytest.fixture
def compiler(store):
    return SearchCompiler(store, IndexManager(store))


@pytest.fixture
def scan_compiler(store):
    indexes = IndexManager(store)
    indexes._fts_unavailable = True
    return SearchCompiler(store, indexes)


def test_tokenize_mixed():
    tokens = tokenize_mixed('alpha "two words" -skip +must EventID:4624 url:')
    assert [(t.kind, t.text, t.column) for t in tokens] == [
        (TokenKind.WORD, "alpha", None),
        (TokenKind.PHRASE, "two words", None),
        (TokenKind.EXCLUDE, "skip", None),
        (TokenKind.INCLUDE, "must", None),
        (TokenKind.COLUMN, "4624", "EventID"),
        (TokenKind.WORD, "url:", None),
    ]


def test_quote_fts():
    assert quote_fts("abc") == '"abc"'
    assert quote_fts('a"b') == '"ab"'
    assert quote_fts('""') == ""


def test_split_terms():
    assert split_terms("  a  b ", "and") == ["a", "b"]
    assert split_terms("  a  b ", "exact") == ["a  b"]
    assert split_terms("   ", "exact") == []


def test_empty_term_compiles_to_nothing(compiler):
    assert compiler.compile("   ") is None
    assert compiler.compile(None) is None


def test_regex_mode(compiler):
    assert compiler.compile("^46", mode="regex") == Or([Regex("c0", "^46"), Regex("c1", "^46")])


def test_fuzzy_condition(compiler):
    assert compiler.compile("logn fail", condition="fuzzy") == And(
        [
            Or([Fuzzy("c0", "logn"), Fuzzy("c1", "logn")]),
            Or([Fuzzy("c0", "fail"), Fuzzy("c1", "fail")]),
        ]
    )


def test_non_contains_condition(compiler):
    assert compiler.compile("a b", mode="or", condition="equals") == Or(
        [
            Or([Equals("c0", "a"), Equals("c1", "a")]),
            Or([Equals("c0", "b"), Equals("c1", "b")]),
        ]
    )
    assert compiler.compile("Log", condition="startswith") == And(
        [Or([Like("c0", "Log%"), Like("c1", "Log%")])]
    )


def test_mixed_full_text(compiler):
    clause = compiler.compile('powershell -cmd "net user" eventid:4624')
    assert clause == And(
        [Like("c1", "%4624%"), FullText('("powershell" AND "net user") NOT "cmd"')]
    )


def test_mixed_unknown_column_is_a_plain_word(compiler):
    assert compiler.compile("Host:ws01") == And([FullText('"Host:ws01"')])


def test_mixed_exclusion_only(compiler):
    assert compiler.compile("-cmd -wmic") == And([FullText('"cmd" OR "wmic"', negate=True)])


def test_and_or_exact_modes(compiler):
    assert compiler.compile("a b", mode="and") == FullText('"a" AND "b"')
    assert compiler.compile("a b", mode="or") == FullText('"a" OR "b"')
    assert compiler.compile("net user", mode="exact") == FullText('"net user"')


def test_scan_fallback_mixed(scan_compiler):
    clause = scan_compiler.compile("logon -failure EventID:4624")
    assert clause == And(
        [
            Or([Like("c0", "%logon%"), Like("c1", "%logon%")]),
            And([Like("c0", "%failure%", negate=True), Like("c1", "%failure%", negate=True)]),
            Like("c1", "%4624%"),
        ]
    )


def test_scan_fallback_modes(scan_compiler):
    assert scan_compiler.compile("a b", mode="or") == Or(
        [
            Or([Like("c0", "%a%"), Like("c1", "%a%")]),
            Or([Like("c0", "%b%"), Like("c1", "%b%")]),
        ]
    )
    assert scan_compiler.compile("net user", mode="exact") == And(
        [Or([Like("c0", "%net user%"), Like("c1", "%net user%")])]
    )


def test_punctuation_terms_scan_instead_of_full_text(compiler):
    assert compiler.compile("logon -") == And(
        [Or([Like("c0", "%-%"), Like("c1", "%-%")]), FullText('"logon"')]
    )
    assert compiler.compile("a :", mode="or") == Or(
        [Or([Like("c0", "%:%"), Like("c1", "%:%")]), FullText('"a"')]
    )
    assert compiler.compile("--", mode="exact") == Or([Like("c0", "%--%"), Like("c1", "%--%")])
