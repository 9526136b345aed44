import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from .sql_functions import transaction

logger = logging.getLogger(__name__)


@dataclass
class HighlightRule:
    column: str
    condition: str
    value: str = ""
    bg_color: str = ""
    fg_color: str = ""
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data):
        return cls(
            column=data.get("column") or data.get("colName") or "",
            condition=data.get("condition", "contains"),
            value="" if data.get("value") is None else str(data.get("value")),
            bg_color=data.get("bgColor", data.get("bg_color", "")) or "",
            fg_color=data.get("fgColor", data.get("fg_color", "")) or "",
            id=data.get("id"),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "column": self.column,
            "condition": self.condition,
            "value": self.value,
            "bgColor": self.bg_color,
            "fgColor": self.fg_color,
        }


def _chunks(items, size):
    for start in range(0, len(items), size):
        yield items[start : start + size]


class AnnotationStore:
    """
    Bookmarks, tags and highlight rules of one session.

    ``on_change`` runs after every bookmark or tag mutation; the session uses it
    to drop memoised filtered counts.
    """

    def __init__(self, conn, on_change: Callable[[], None] = lambda: None, chunk_size=5000):
        self.conn = conn
        self.on_change = on_change
        self.chunk_size = chunk_size

    # Bookmarks

    def set_bookmarks(self, row_keys: Iterable[int], add: bool = True) -> int:
        keys = [(int(k),) for k in row_keys]
        if not keys:
            return 0
        with transaction(self.conn):
            if add:
                self.conn.executemany(
                    "INSERT OR IGNORE INTO bookmarks (rowid) VALUES (?)", keys
                )
            else:
                self.conn.executemany("DELETE FROM bookmarks WHERE rowid = ?", keys)
        self.on_change()
        return len(keys)

    def replace_bookmarks(self, row_keys: Iterable[int]) -> int:
        keys = [(int(k),) for k in row_keys]
        with transaction(self.conn):
            self.conn.execute("DELETE FROM bookmarks")
            self.conn.executemany(
                "INSERT OR IGNORE INTO bookmarks (rowid) VALUES (?)", keys
            )
        self.on_change()
        return len(keys)

    def bookmark_where(self, predicate, add: bool = True) -> int:
        """Bookmark (or un-bookmark) every row matching a compiled predicate."""
        with transaction(self.conn):
            if add:
                cursor = self.conn.execute(
                    f"INSERT OR IGNORE INTO bookmarks (rowid) "
                    f"SELECT data.rowid FROM data {predicate.where}",
                    predicate.params,
                )
            else:
                cursor = self.conn.execute(
                    f"DELETE FROM bookmarks WHERE rowid IN "
                    f"(SELECT data.rowid FROM data {predicate.where})",
                    predicate.params,
                )
        self.on_change()
        return cursor.rowcount

    def bookmark_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM bookmarks").fetchone()[0]

    def bookmarked_keys(self) -> List[int]:
        return [r[0] for r in self.conn.execute("SELECT rowid FROM bookmarks ORDER BY rowid")]

    def bookmarked_among(self, row_keys: List[int]) -> List[int]:
        found = []
        for chunk in _chunks(list(row_keys), self.chunk_size):
            placeholders = ",".join("?" * len(chunk))
            found.extend(
                r[0]
                for r in self.conn.execute(
                    f"SELECT rowid FROM bookmarks WHERE rowid IN ({placeholders})", chunk
                )
            )
        return sorted(found)

    # Tags

    def add_tags(self, pairs: Iterable) -> int:
        rows = [(int(k), str(tag)) for k, tag in pairs if str(tag).strip()]
        if not rows:
            return 0
        with transaction(self.conn):
            self.conn.executemany(
                "INSERT OR IGNORE INTO tags (rowid, tag) VALUES (?, ?)", rows
            )
        self.on_change()
        return len(rows)

    def remove_tag(self, row_key: int, tag: str) -> int:
        with transaction(self.conn):
            cursor = self.conn.execute(
                "DELETE FROM tags WHERE rowid = ? AND tag = ?", (int(row_key), tag)
            )
        self.on_change()
        return cursor.rowcount

    def tag_where(self, tag: str, predicate) -> int:
        with transaction(self.conn):
            cursor = self.conn.execute(
                f"INSERT OR IGNORE INTO tags (rowid, tag) "
                f"SELECT data.rowid, ? FROM data {predicate.where}",
                (tag,) + tuple(predicate.params),
            )
        self.on_change()
        return cursor.rowcount

    def tag_ranges(self, ident: str, ranges) -> int:
        """Tag rows whose ``ident`` value falls within each ``(low, high, tag)``."""
        tagged = 0
        with transaction(self.conn):
            for low, high, tag in ranges:
                if not str(tag).strip():
                    continue
                cursor = self.conn.execute(
                    f"INSERT OR IGNORE INTO tags (rowid, tag) SELECT rowid, ? FROM data "
                    f"WHERE {ident} >= ? AND {ident} <= ? AND {ident} != ''",
                    (tag, low, high),
                )
                tagged += cursor.rowcount
        self.on_change()
        return tagged

    def tags_among(self, row_keys: List[int]) -> Dict[int, List[str]]:
        result: Dict[int, List[str]] = {}
        for chunk in _chunks(list(row_keys), self.chunk_size):
            placeholders = ",".join("?" * len(chunk))
            for rowid, tag in self.conn.execute(
                f"SELECT rowid, tag FROM tags WHERE rowid IN ({placeholders}) "
                f"ORDER BY rowid, tag",
                chunk,
            ):
                result.setdefault(rowid, []).append(tag)
        return result

    def all_tags(self):
        return [
            (tag, count)
            for tag, count in self.conn.execute(
                "SELECT tag, COUNT(*) FROM tags GROUP BY tag ORDER BY tag"
            )
        ]

    def replace_tags(self, tags_by_row_key: Dict) -> int:
        rows = [
            (int(key), str(tag))
            for key, tags in tags_by_row_key.items()
            for tag in tags
            if str(tag).strip()
        ]
        with transaction(self.conn):
            self.conn.execute("DELETE FROM tags")
            self.conn.executemany(
                "INSERT OR IGNORE INTO tags (rowid, tag) VALUES (?, ?)", rows
            )
        self.on_change()
        return len(rows)

    # Highlight rules

    def add_highlight_rule(self, rule: HighlightRule) -> int:
        with transaction(self.conn):
            cursor = self.conn.execute(
                "INSERT INTO color_rules (col_name, condition, value, bg_color, fg_color) "
                "VALUES (?, ?, ?, ?, ?)",
                (rule.column, rule.condition, rule.value, rule.bg_color, rule.fg_color),
            )
        rule.id = cursor.lastrowid
        return rule.id

    def highlight_rules(self) -> List[HighlightRule]:
        return [
            HighlightRule(
                column=col_name,
                condition=condition,
                value=value,
                bg_color=bg_color,
                fg_color=fg_color,
                id=rule_id,
            )
            for rule_id, col_name, condition, value, bg_color, fg_color in self.conn.execute(
                "SELECT id, col_name, condition, value, bg_color, fg_color "
                "FROM color_rules ORDER BY id"
            )
        ]

    def remove_highlight_rule(self, rule_id: int) -> bool:
        with transaction(self.conn):
            cursor = self.conn.execute("DELETE FROM color_rules WHERE id = ?", (rule_id,))
        return cursor.rowcount > 0

    def replace_highlight_rules(self, rules: Iterable[HighlightRule]) -> int:
        rules = list(rules)
        with transaction(self.conn):
            self.conn.execute("DELETE FROM color_rules")
            for rule in rules:
                cursor = self.conn.execute(
                    "INSERT INTO color_rules (col_name, condition, value, bg_color, fg_color) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (rule.column, rule.condition, rule.value, rule.bg_color, rule.fg_color),
                )
                rule.id = cursor.lastrowid
        logger.debug(f"Restored {len(rules)} highlight rules")
        return len(rules)
