"""Pytest configuration and fixtures.

Points the app at an in-memory recipe store and the web socket transport
before `config` is imported, and provides fakes for the remote services.
"""

import os

os.environ["SOUSCHEF_DB_PATH"] = ":memory:"
os.environ["SLACK_BOT_TOKEN"] = ""
os.environ["CONVERSATION_WORKSPACE_ID"] = "test-workspace"

import pytest
import pytest_asyncio

from souschef.conversation import TurnDispatcher
from souschef.models import NluEntity, NluResponse, RecipeCandidate, RecipeInfo, RecipeStep
from souschef.session import SessionManager
from souschef.store import SQLiteRecipeStore


SAMPLE_RECIPES = [
    RecipeCandidate(id="101", title="Garlic Chicken"),
    RecipeCandidate(id="102", title="Chicken Stir Fry"),
    RecipeCandidate(id="103", title="Roast Chicken"),
    RecipeCandidate(id="104", title="Chicken Soup"),
    RecipeCandidate(id="105", title="Lemon Garlic Chicken"),
]


class FakeGateway:
    """Stands in for Watson Assistant; echoes the previous context like the real service"""

    def __init__(self):
        self.responses: list[NluResponse] = []
        self.calls: list[dict] = []
        self.error = None

    def queue(self, context=None, entities=None, output=None) -> None:
        self.responses.append(
            NluResponse(
                context=context or {},
                entities=[NluEntity(entity=e, value=v) for e, v in (entities or [])],
                output_text=output or [],
            )
        )

    async def message(self, text, context=None, workspace_id=None) -> NluResponse:
        self.calls.append({"text": text, "context": dict(context or {}), "workspace_id": workspace_id})
        if self.error:
            raise self.error
        if self.responses:
            response = self.responses.pop(0)
        else:
            response = NluResponse(output_text=["Hi! I'm Sous Chef.", "What would you like to cook?"])
        # dialog flags are set per turn; other context variables carry over
        carried = {k: v for k, v in (context or {}).items() if not k.startswith("is_") and k != "selection"}
        merged = {**carried, **response.context}
        return NluResponse(context=merged, entities=response.entities, output_text=response.output_text)


class FakeRecipeClient:
    """Stands in for Spoonacular and records every call"""

    def __init__(self, recipes=None):
        self.recipes = list(SAMPLE_RECIPES if recipes is None else recipes)
        self.calls: list[tuple] = []
        self.error = None

    async def _call(self, name, arg):
        self.calls.append((name, arg))
        if self.error:
            raise self.error

    async def find_by_ingredients(self, ingredients):
        await self._call("find_by_ingredients", ingredients)
        return list(self.recipes)

    async def find_by_cuisine(self, cuisine):
        await self._call("find_by_cuisine", cuisine)
        return list(self.recipes)

    async def get_info_by_id(self, recipe_id):
        await self._call("get_info_by_id", recipe_id)
        title = next((r.title for r in self.recipes if r.id == recipe_id), f"Recipe {recipe_id}")
        return RecipeInfo(title=title, ready_in_minutes=45, servings=4)

    async def get_steps_by_id(self, recipe_id):
        await self._call("get_steps_by_id", recipe_id)
        return [
            RecipeStep(step="Chop the garlic.", equipment=["knife", "cutting board"]),
            RecipeStep(step="Season the chicken.", equipment=[]),
        ]

    def names(self):
        return [name for name, _ in self.calls]


class RecordingTransport:
    """Collects replies instead of sending them"""

    name = "recording"

    def __init__(self, fail=False):
        self.sent: list[tuple] = []
        self.fail = fail

    async def send_text(self, message, text):
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append((message.user_id, text))


@pytest_asyncio.fixture
async def store():
    recipe_store = SQLiteRecipeStore(":memory:")
    await recipe_store.init()
    yield recipe_store
    await recipe_store.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def recipe_client():
    return FakeRecipeClient()


@pytest.fixture
def sessions():
    return SessionManager()


@pytest.fixture
def dispatcher(sessions, gateway, store, recipe_client):
    return TurnDispatcher(
        sessions=sessions,
        gateway=gateway,
        store=store,
        recipe_client=recipe_client,
        workspace_id="test-workspace",
    )
