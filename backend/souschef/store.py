"""
Recipe Store
SQLite cache of ingredient/cuisine lookups and rendered recipes, plus
per-user request counters used to work out favorites
"""

import asyncio
import json
import sqlite3
from datetime import datetime
from typing import Optional, Union

from souschef.errors import StoreError
from souschef.logger import get_logger
from souschef.models import IngredientCuisine, RecipeCandidate, SourceKind, StoredRecipe, User

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ingredient_cuisines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    name TEXT NOT NULL,
    recipes_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (kind, name)
);

CREATE TABLE IF NOT EXISTS recipes (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    instructions TEXT NOT NULL,
    source_id INTEGER REFERENCES ingredient_cuisines(id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_requests (
    user_id INTEGER NOT NULL REFERENCES users(id),
    target_kind TEXT NOT NULL,
    target_id TEXT NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, target_kind, target_id)
);

CREATE TABLE IF NOT EXISTS source_recipe_requests (
    source_id INTEGER NOT NULL REFERENCES ingredient_cuisines(id),
    recipe_id TEXT NOT NULL REFERENCES recipes(id),
    count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (source_id, recipe_id)
);
"""

RECIPE_TARGET = "recipe"


def normalize_key(text: str) -> str:
    """Lower-case, trim each comma-separated part and drop empty parts"""
    parts = [part.strip() for part in text.lower().split(",")]
    return ", ".join(part for part in parts if part)


class SQLiteRecipeStore:
    """Async facade over a single SQLite connection.

    Every operation runs in a worker thread while holding an asyncio lock,
    so read-modify-write sequences such as counter increments are atomic.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the database and create the schema"""
        # bound to the loop that runs the app
        self._lock = asyncio.Lock()
        async with self._lock:
            try:
                self._conn = await asyncio.to_thread(self._connect)
            except sqlite3.Error as e:
                raise StoreError(f"Could not open recipe store at {self.db_path}: {e}") from e
        logger.info(f"Recipe store ready at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.executescript(SCHEMA)
        conn.commit()
        return conn

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await asyncio.to_thread(self._conn.close)
                self._conn = None

    async def _run(self, fn, *args):
        """Run fn(conn, *args) in a transaction on a worker thread"""
        async with self._lock:
            if self._conn is None:
                raise StoreError("Recipe store used before init()")
            try:
                return await asyncio.to_thread(self._transaction, fn, *args)
            except sqlite3.Error as e:
                raise StoreError(f"Recipe store error: {e}") from e

    def _transaction(self, fn, *args):
        with self._conn:
            return fn(self._conn, *args)

    # ========================================================================
    # USERS
    # ========================================================================

    async def add_user(self, user_id: str) -> User:
        """Create the user record, or return the existing one"""
        return await self._run(self._add_user, user_id)

    @staticmethod
    def _add_user(conn: sqlite3.Connection, user_id: str) -> User:
        conn.execute(
            "INSERT OR IGNORE INTO users (user_id, created_at) VALUES (?, ?)",
            (user_id, _now()),
        )
        row = conn.execute("SELECT id, user_id FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return User(id=row["id"], user_id=row["user_id"])

    # ========================================================================
    # INGREDIENTS / CUISINES
    # ========================================================================

    async def find_ingredient(self, key: str) -> Optional[IngredientCuisine]:
        return await self._run(self._find_source, SourceKind.INGREDIENT, normalize_key(key))

    async def add_ingredient(self, key: str, recipes: list[RecipeCandidate], user: User) -> IngredientCuisine:
        return await self._run(self._add_source, SourceKind.INGREDIENT, normalize_key(key), recipes, user)

    async def record_ingredient_request_for_user(self, ingredient: IngredientCuisine, user: User) -> None:
        await self._run(self._record_user_request, user, SourceKind.INGREDIENT.value, str(ingredient.id))

    async def find_cuisine(self, key: str) -> Optional[IngredientCuisine]:
        return await self._run(self._find_source, SourceKind.CUISINE, normalize_key(key))

    async def add_cuisine(self, key: str, recipes: list[RecipeCandidate], user: User) -> IngredientCuisine:
        return await self._run(self._add_source, SourceKind.CUISINE, normalize_key(key), recipes, user)

    async def record_cuisine_request_for_user(self, cuisine: IngredientCuisine, user: User) -> None:
        await self._run(self._record_user_request, user, SourceKind.CUISINE.value, str(cuisine.id))

    @staticmethod
    def _find_source(conn: sqlite3.Connection, kind: SourceKind, name: str) -> Optional[IngredientCuisine]:
        row = conn.execute(
            "SELECT id, kind, name, recipes_json FROM ingredient_cuisines WHERE kind = ? AND name = ?",
            (kind.value, name),
        ).fetchone()
        return _row_to_source(row) if row else None

    @staticmethod
    def _add_source(
        conn: sqlite3.Connection,
        kind: SourceKind,
        name: str,
        recipes: list[RecipeCandidate],
        user: User,
    ) -> IngredientCuisine:
        recipes_json = json.dumps([r.to_dict() for r in recipes])
        cursor = conn.execute(
            "INSERT INTO ingredient_cuisines (kind, name, recipes_json, created_at) VALUES (?, ?, ?, ?)",
            (kind.value, name, recipes_json, _now()),
        )
        source = IngredientCuisine(id=cursor.lastrowid, kind=kind, name=name, recipes=list(recipes))
        SQLiteRecipeStore._record_user_request(conn, user, kind.value, str(source.id))
        return source

    # ========================================================================
    # RECIPES
    # ========================================================================

    async def find_recipe(self, recipe_id: str) -> Optional[StoredRecipe]:
        return await self._run(self._find_recipe, str(recipe_id))

    async def add_recipe(
        self,
        recipe_id: str,
        title: str,
        instructions: str,
        ingredient_cuisine: Optional[IngredientCuisine],
        user: User,
    ) -> StoredRecipe:
        return await self._run(self._add_recipe, str(recipe_id), title, instructions, ingredient_cuisine, user)

    async def record_recipe_request_for_user(
        self,
        recipe: StoredRecipe,
        ingredient_cuisine: Optional[IngredientCuisine],
        user: User,
    ) -> None:
        await self._run(self._record_recipe_request, recipe, ingredient_cuisine, user)

    async def find_favorite_recipes_for_user(self, user: User, limit: int) -> list[RecipeCandidate]:
        """The user's most requested recipes, most requested first"""
        return await self._run(self._find_favorites, user, limit)

    @staticmethod
    def _find_recipe(conn: sqlite3.Connection, recipe_id: str) -> Optional[StoredRecipe]:
        row = conn.execute(
            "SELECT id, title, instructions, source_id FROM recipes WHERE id = ?", (recipe_id,)
        ).fetchone()
        if not row:
            return None
        return StoredRecipe(
            id=row["id"], title=row["title"], instructions=row["instructions"], source_id=row["source_id"]
        )

    @staticmethod
    def _add_recipe(
        conn: sqlite3.Connection,
        recipe_id: str,
        title: str,
        instructions: str,
        ingredient_cuisine: Optional[IngredientCuisine],
        user: User,
    ) -> StoredRecipe:
        source_id = ingredient_cuisine.id if ingredient_cuisine else None
        conn.execute(
            "INSERT INTO recipes (id, title, instructions, source_id, created_at) VALUES (?, ?, ?, ?, ?)",
            (recipe_id, title, instructions, source_id, _now()),
        )
        recipe = StoredRecipe(id=recipe_id, title=title, instructions=instructions, source_id=source_id)
        SQLiteRecipeStore._record_recipe_request(conn, recipe, ingredient_cuisine, user)
        return recipe

    @staticmethod
    def _record_recipe_request(
        conn: sqlite3.Connection,
        recipe: StoredRecipe,
        ingredient_cuisine: Optional[IngredientCuisine],
        user: User,
    ) -> None:
        if ingredient_cuisine is not None:
            conn.execute(
                """
                INSERT INTO source_recipe_requests (source_id, recipe_id, count) VALUES (?, ?, 1)
                ON CONFLICT (source_id, recipe_id) DO UPDATE SET count = count + 1
                """,
                (ingredient_cuisine.id, recipe.id),
            )
        SQLiteRecipeStore._record_user_request(conn, user, RECIPE_TARGET, recipe.id)

    @staticmethod
    def _find_favorites(conn: sqlite3.Connection, user: User, limit: int) -> list[RecipeCandidate]:
        rows = conn.execute(
            """
            SELECT r.id, r.title FROM user_requests ur
            JOIN recipes r ON r.id = ur.target_id
            WHERE ur.user_id = ? AND ur.target_kind = ?
            ORDER BY ur.count DESC, r.title ASC
            LIMIT ?
            """,
            (user.id, RECIPE_TARGET, limit),
        ).fetchall()
        return [RecipeCandidate(id=row["id"], title=row["title"]) for row in rows]

    # ========================================================================
    # COUNTERS
    # ========================================================================

    @staticmethod
    def _record_user_request(conn: sqlite3.Connection, user: User, target_kind: str, target_id: str) -> None:
        if user is None:
            raise StoreError("Cannot record a request without a user record")
        conn.execute(
            """
            INSERT INTO user_requests (user_id, target_kind, target_id, count) VALUES (?, ?, ?, 1)
            ON CONFLICT (user_id, target_kind, target_id) DO UPDATE SET count = count + 1
            """,
            (user.id, target_kind, target_id),
        )

    async def count_requests_for_user(self, record: Union[IngredientCuisine, StoredRecipe], user: User) -> int:
        """How many times the user asked for an ingredient, cuisine or recipe"""
        if isinstance(record, IngredientCuisine):
            target_kind, target_id = record.kind.value, str(record.id)
        else:
            target_kind, target_id = RECIPE_TARGET, record.id
        return await self._run(self._count, user.id, target_kind, target_id)

    async def count_recipe_requests_for_source(self, recipe: StoredRecipe, ingredient_cuisine: IngredientCuisine) -> int:
        """How many times the recipe was picked from this ingredient/cuisine list"""
        return await self._run(self._count_for_source, ingredient_cuisine.id, recipe.id)

    @staticmethod
    def _count(conn: sqlite3.Connection, user_id: int, target_kind: str, target_id: str) -> int:
        row = conn.execute(
            "SELECT count FROM user_requests WHERE user_id = ? AND target_kind = ? AND target_id = ?",
            (user_id, target_kind, target_id),
        ).fetchone()
        return row["count"] if row else 0

    @staticmethod
    def _count_for_source(conn: sqlite3.Connection, source_id: int, recipe_id: str) -> int:
        row = conn.execute(
            "SELECT count FROM source_recipe_requests WHERE source_id = ? AND recipe_id = ?",
            (source_id, recipe_id),
        ).fetchone()
        return row["count"] if row else 0


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _row_to_source(row: sqlite3.Row) -> IngredientCuisine:
    try:
        recipes = [RecipeCandidate.from_dict(r) for r in json.loads(row["recipes_json"])]
    except (ValueError, TypeError, AttributeError) as e:
        raise StoreError(f"Corrupt recipe list stored for '{row['name']}'") from e
    return IngredientCuisine(id=row["id"], kind=SourceKind(row["kind"]), name=row["name"], recipes=recipes)
