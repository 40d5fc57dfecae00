"""
Database Management Module

Provides the data-access contract for the collection tree:
- SQLite connection management (WAL, foreign keys, busy timeout)
- Explicit BEGIN IMMEDIATE transactions with rollback on failure
- Collection CRUD and sibling-order batch writes
- Item upserts keyed on (collection_id, url)
"""

import sqlite3
import json
import hashlib
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from feedtree.core.errors import IntegrityError
from feedtree.core.forest import build_children_index, descendants
from feedtree.core.models import FeedItem, to_timestamp

logger = logging.getLogger("feedtree")

ITEM_INSERTED = 'inserted'
ITEM_UPDATED = 'updated'
ITEM_UNCHANGED = 'unchanged'

COLLECTION_COLUMNS = (
    'id', 'owner_id', 'title', 'slug', 'icon', '"order"', 'parent_id',
    'description', 'url', 'date_updated', 'refresh_interval', 'layout',
)
_COLLECTION_FIELDS = ", ".join(f"c.{col}" for col in COLLECTION_COLUMNS)
_SELECT_COLLECTION = f"SELECT {_COLLECTION_FIELDS} FROM collections c"


def content_hash(item: FeedItem) -> str:
    """Fingerprint of everything upstream controls about an item."""
    basis = json.dumps(
        [
            item.title,
            item.summary,
            item.full_text,
            item.thumbnail_url,
            to_timestamp(item.date_published),
            to_timestamp(item.date_updated),
            list(item.categories),
            item.comments,
        ],
        ensure_ascii=True,
    )
    return hashlib.sha256(basis.encode('utf-8')).hexdigest()


# ====================================================================================
# DATABASE MANAGER
# ====================================================================================

class DatabaseManager:
    """
    Manages one SQLite connection for the collection tree.

    Features:
    - Autocommit connection; multi-statement work goes through transaction()
    - ON DELETE CASCADE from a collection to its children and items
    - UNIQUE (owner_id, url) on collections and (collection_id, url) on items
    """

    def __init__(self, db_file: Path, busy_timeout: float = 10):
        """Open the connection and ensure the schema exists."""
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_file), timeout=busy_timeout, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode = WAL")
        self._tx_depth = 0
        self._init_tables()

    def _init_tables(self):
        """Initialize database tables with current schema."""
        self.conn.executescript('''
            CREATE TABLE IF NOT EXISTS collections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                slug TEXT NOT NULL,
                icon TEXT NOT NULL,
                "order" INTEGER NOT NULL DEFAULT 0,
                parent_id INTEGER REFERENCES collections(id) ON DELETE CASCADE,
                description TEXT,
                url TEXT,
                date_updated INTEGER,
                refresh_interval INTEGER NOT NULL,
                layout TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_collections_owner_parent
                ON collections(owner_id, parent_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_collections_owner_url
                ON collections(owner_id, url);

            CREATE TABLE IF NOT EXISTS collection_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                collection_id INTEGER NOT NULL REFERENCES collections(id) ON DELETE CASCADE,
                url TEXT NOT NULL,
                title TEXT,
                summary TEXT,
                full_text TEXT,
                thumbnail_url TEXT,
                date_published INTEGER,
                date_updated INTEGER,
                date_read INTEGER,
                categories TEXT,
                comments TEXT,
                reading_time INTEGER,
                content_hash TEXT,
                UNIQUE (collection_id, url)
            );
            CREATE INDEX IF NOT EXISTS idx_items_unread
                ON collection_items(collection_id, date_read);
        ''')

    # --------------------------------------------------------------------------------
    # Transactions
    # --------------------------------------------------------------------------------

    @contextmanager
    def transaction(self):
        """
        Run the enclosed statements atomically (BEGIN IMMEDIATE ... COMMIT).

        Nested use joins the outer transaction. Any exception rolls back;
        sqlite3.IntegrityError is re-raised as feedtree IntegrityError.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        self.conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self
        except sqlite3.IntegrityError as e:
            self._rollback()
            logger.error(f"[DB] Integrity violation, rolled back: {e}")
            raise IntegrityError(f"Storage constraint violated: {e}") from e
        except BaseException:
            self._rollback()
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._tx_depth = 0

    def _rollback(self):
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    # --------------------------------------------------------------------------------
    # Collections
    # --------------------------------------------------------------------------------

    def insert_collection(self, owner_id: int, title: str, slug: str, icon: str,
                          parent_id: Optional[int], order: int, description: Optional[str],
                          url: Optional[str], refresh_interval: int, layout: str,
                          date_updated: Optional[int] = None) -> int:
        """Insert a collection row and return its id."""
        cur = self.conn.execute(
            """INSERT INTO collections
            (owner_id, title, slug, icon, "order", parent_id, description, url,
             date_updated, refresh_interval, layout)
            VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
            (owner_id, title, slug, icon, order, parent_id, description, url,
             date_updated, refresh_interval, layout)
        )
        return cur.lastrowid

    def update_collection(self, collection_id: int, title: str, slug: str, icon: str,
                          parent_id: Optional[int], description: Optional[str],
                          url: Optional[str], refresh_interval: int):
        """Replace the user-editable fields of a collection."""
        self.conn.execute(
            """UPDATE collections
            SET title = ?, slug = ?, icon = ?, parent_id = ?, description = ?,
                url = ?, refresh_interval = ?
            WHERE id = ?""",
            (title, slug, icon, parent_id, description, url, refresh_interval, collection_id)
        )

    def set_parent(self, collection_id: int, parent_id: Optional[int]):
        self.conn.execute("UPDATE collections SET parent_id = ? WHERE id = ?", (parent_id, collection_id))

    def set_date_updated(self, collection_id: int, date_updated: Optional[int]):
        self.conn.execute(
            "UPDATE collections SET date_updated = ? WHERE id = ?",
            (date_updated, collection_id)
        )

    def set_layout(self, collection_id: int, layout: str):
        self.conn.execute("UPDATE collections SET layout = ? WHERE id = ?", (layout, collection_id))

    def delete_collection_cascade(self, collection_id: int) -> int:
        """Delete a collection; children and items follow via ON DELETE CASCADE."""
        cur = self.conn.execute("DELETE FROM collections WHERE id = ?", (collection_id,))
        return cur.rowcount

    def select_collection(self, collection_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            f"{_SELECT_COLLECTION} WHERE c.id = ?", (collection_id,)
        ).fetchone()

    def select_tree(self, owner_id: int) -> List[sqlite3.Row]:
        """All of an owner's collections with their unread item counts (0, never NULL)."""
        return self.conn.execute(
            f"""SELECT {_COLLECTION_FIELDS}, COALESCE(u.unread_count, 0) AS unread_count
            FROM collections c
            LEFT JOIN (
                SELECT collection_id, COUNT(*) AS unread_count
                FROM collection_items
                WHERE date_read IS NULL
                GROUP BY collection_id
            ) u ON u.collection_id = c.id
            WHERE c.owner_id = ?
            ORDER BY c."order" ASC, c.id ASC""",
            (owner_id,)
        ).fetchall()

    def select_order_rows(self, owner_id: Optional[int] = None) -> List[sqlite3.Row]:
        """(id, owner_id, parent_id, order) for one owner, or for everyone."""
        if owner_id is None:
            return self.conn.execute(
                'SELECT id, owner_id, parent_id, "order" FROM collections ORDER BY id'
            ).fetchall()
        return self.conn.execute(
            'SELECT id, owner_id, parent_id, "order" FROM collections WHERE owner_id = ? ORDER BY id',
            (owner_id,)
        ).fetchall()

    def write_orders(self, updates: Sequence[Tuple[int, int]]):
        """Persist one sibling group's renumbering as a single batch of (order, id)."""
        if updates:
            self.conn.executemany('UPDATE collections SET "order" = ? WHERE id = ?', updates)

    def max_sibling_order(self, owner_id: int, parent_id: Optional[int]) -> int:
        """Highest order among a sibling group, -1 when the group is empty."""
        row = self.conn.execute(
            'SELECT MAX("order") FROM collections WHERE owner_id = ? AND parent_id IS ?',
            (owner_id, parent_id)
        ).fetchone()
        return row[0] if row[0] is not None else -1

    def select_descendant_ids(self, root_id: int) -> Set[int]:
        """root_id and every transitive child; empty set when root_id does not exist."""
        root = self.conn.execute("SELECT owner_id FROM collections WHERE id = ?", (root_id,)).fetchone()
        if root is None:
            return set()
        rows = self.conn.execute(
            "SELECT id, parent_id FROM collections WHERE owner_id = ?", (root['owner_id'],)
        ).fetchall()
        return descendants(build_children_index((r['id'], r['parent_id']) for r in rows), root_id)

    def select_due_with_url(self, now: int, owner_id: Optional[int] = None) -> List[sqlite3.Row]:
        """Collections with a url whose refresh interval has elapsed at `now` (unix seconds)."""
        query = f"""{_SELECT_COLLECTION}
            WHERE c.url IS NOT NULL
              AND (c.date_updated IS NULL OR c.date_updated + c.refresh_interval * 60 <= ?)"""
        params: list = [now]
        if owner_id is not None:
            query += " AND c.owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY c.date_updated IS NOT NULL, c.date_updated ASC, c.id ASC"
        return self.conn.execute(query, params).fetchall()

    def select_collections_with_url(self, owner_id: int, ids: Optional[Iterable[int]] = None) -> List[sqlite3.Row]:
        """An owner's collections that have a feed url, optionally limited to `ids`."""
        rows = self.conn.execute(
            f"{_SELECT_COLLECTION} WHERE c.owner_id = ? AND c.url IS NOT NULL ORDER BY c.id",
            (owner_id,)
        ).fetchall()
        if ids is None:
            return rows
        wanted = set(ids)
        return [r for r in rows if r['id'] in wanted]

    def has_collection_with_url(self, owner_id: int, url: str, exclude_id: Optional[int] = None) -> bool:
        row = self.conn.execute(
            "SELECT id FROM collections WHERE owner_id = ? AND url = ? AND id IS NOT ?",
            (owner_id, url, exclude_id)
        ).fetchone()
        return row is not None

    # --------------------------------------------------------------------------------
    # Items
    # --------------------------------------------------------------------------------

    def upsert_item(self, collection_id: int, item: FeedItem, now: int) -> str:
        """
        Insert or refresh one fetched item keyed on (collection_id, url).

        date_read is never touched. An existing item is only rewritten when its
        content hash changed, and only then does its date_updated move.

        Returns:
            'inserted', 'updated' or 'unchanged'
        """
        digest = content_hash(item)
        published = to_timestamp(item.date_published)
        upstream_updated = to_timestamp(item.date_updated)
        categories = json.dumps(list(item.categories))

        existing = self.conn.execute(
            "SELECT id, content_hash FROM collection_items WHERE collection_id = ? AND url = ?",
            (collection_id, item.url)
        ).fetchone()

        if existing is None:
            self.conn.execute(
                """INSERT INTO collection_items
                (collection_id, url, title, summary, full_text, thumbnail_url,
                 date_published, date_updated, date_read, categories, comments,
                 reading_time, content_hash)
                VALUES (?,?,?,?,?,?,?,?,NULL,?,?,?,?)""",
                (collection_id, item.url, item.title, item.summary, item.full_text,
                 item.thumbnail_url, published or now, upstream_updated or published or now,
                 categories, item.comments, item.reading_time, digest)
            )
            return ITEM_INSERTED

        if existing['content_hash'] == digest:
            return ITEM_UNCHANGED

        self.conn.execute(
            """UPDATE collection_items
            SET title = ?, summary = ?, full_text = ?, thumbnail_url = ?,
                date_published = COALESCE(?, date_published), date_updated = ?, categories = ?, comments = ?,
                reading_time = ?, content_hash = ?
            WHERE id = ?""",
            (item.title, item.summary, item.full_text, item.thumbnail_url,
             published, upstream_updated or now, categories, item.comments,
             item.reading_time, digest, existing['id'])
        )
        return ITEM_UPDATED

    def mark_items_read(self, collection_ids: Iterable[int], when: int) -> int:
        """Stamp date_read on every unread item of the given collections."""
        ids = list(collection_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        cur = self.conn.execute(
            f"UPDATE collection_items SET date_read = ? WHERE date_read IS NULL AND collection_id IN ({placeholders})",
            [when] + ids
        )
        return cur.rowcount

    def set_item_date_read(self, collection_id: int, item_id: int, when: Optional[int]) -> int:
        cur = self.conn.execute(
            "UPDATE collection_items SET date_read = ? WHERE id = ? AND collection_id = ?",
            (when, item_id, collection_id)
        )
        return cur.rowcount

    def select_items(self, owner_id: int, collection_ids: Optional[Iterable[int]] = None,
                     limit: int = 50, offset: int = 0) -> List[sqlite3.Row]:
        """An owner's items, newest first; limited to `collection_ids` when given."""
        query = """SELECT i.* FROM collection_items i
            JOIN collections c ON c.id = i.collection_id
            WHERE c.owner_id = ?"""
        params: list = [owner_id]
        if collection_ids is not None:
            ids = list(collection_ids)
            if not ids:
                return []
            query += f" AND i.collection_id IN ({','.join('?' for _ in ids)})"
            params.extend(ids)
        query += " ORDER BY i.date_published DESC, i.id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return self.conn.execute(query, params).fetchall()

    def select_item(self, collection_id: int, item_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM collection_items WHERE id = ? AND collection_id = ?",
            (item_id, collection_id)
        ).fetchone()

    def count_items(self, collection_id: int) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM collection_items WHERE collection_id = ?", (collection_id,)
        ).fetchone()[0]

    def close(self):
        """Close database connection."""
        self.conn.close()
