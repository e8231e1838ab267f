"""Tests for turn classification and the turn dispatcher.

The dispatcher runs against a real in-memory SQLite store with fake
conversation and recipe services (see conftest.py).
"""

import asyncio
import logging

import pytest

from conftest import SAMPLE_RECIPES, RecordingTransport
from souschef.conversation import (
    FALLBACK_MESSAGE,
    INVALID_SELECTION_MESSAGE,
    TurnMode,
    classify_turn,
    parse_selection,
)
from souschef.errors import GatewayError, RecipeSourceError, StoreError
from souschef.formatting import format_recipe_list
from souschef.models import NluEntity, NluResponse, RecipeCandidate
from souschef.transports import InboundMessage


# ============================================================================
# CLASSIFICATION
# ============================================================================

class TestClassifyTurn:

    def test_favorites_wins_over_everything(self):
        response = NluResponse(
            context={"is_favorites": True, "is_ingredients": True, "is_selection": True},
            entities=[NluEntity("cuisine", "thai")],
        )
        assert classify_turn(response, "my favorites").mode == TurnMode.FAVORITES

    def test_ingredients_passes_raw_text(self):
        response = NluResponse(context={"is_ingredients": True}, entities=[NluEntity("cuisine", "thai")])
        turn = classify_turn(response, "chicken, garlic")
        assert turn.mode == TurnMode.INGREDIENTS
        assert turn.argument == "chicken, garlic"

    def test_cuisine_uses_first_entity_value(self):
        response = NluResponse(context={"is_selection": True}, entities=[NluEntity("cuisine", "thai")])
        turn = classify_turn(response, "something thai please")
        assert turn.mode == TurnMode.CUISINE
        assert turn.argument == "thai"

    def test_cuisine_only_when_first_entity_is_cuisine(self):
        response = NluResponse(entities=[NluEntity("meal", "dinner"), NluEntity("cuisine", "thai")])
        assert classify_turn(response, "thai dinner").mode == TurnMode.START

    def test_selection(self):
        response = NluResponse(context={"is_selection": True, "selection": "3"})
        turn = classify_turn(response, "3")
        assert turn.mode == TurnMode.SELECTION
        assert turn.argument == 3

    def test_selection_without_number(self):
        turn = classify_turn(NluResponse(context={"is_selection": True}), "that one")
        assert turn.argument == -1

    def test_start_is_the_fallthrough(self):
        assert classify_turn(NluResponse(context={"is_favorites": False}), "hi").mode == TurnMode.START


@pytest.mark.parametrize(
    "value,expected",
    [("3", 3), (4, 4), (2.0, 2), (" 2 please", 2), ("abc", -1), ("", -1), (None, -1), (True, -1),
     (float("nan"), -1), (float("inf"), -1), (float("-inf"), -1)],
)
def test_parse_selection(value, expected):
    assert parse_selection(value) == expected


# ============================================================================
# START / FAVORITES
# ============================================================================

@pytest.mark.asyncio
async def test_start_turn_returns_output_and_creates_user_once(dispatcher, gateway, sessions):
    reply = await dispatcher.handle_turn("U1", "hello")
    assert reply == "Hi! I'm Sous Chef.\nWhat would you like to cook?"

    session = sessions.get_or_create("U1")
    user = session.user
    assert user is not None and user.user_id == "U1"
    assert session.started is True

    await dispatcher.handle_turn("U1", "hello again")
    assert session.user is user
    assert gateway.calls[0]["context"] == {}
    assert gateway.calls[0]["workspace_id"] == "test-workspace"


@pytest.mark.asyncio
async def test_favorites_scenario(dispatcher, gateway, store, sessions):
    user = await store.add_user("U1")
    titles = ["Pho", "Ramen", "Tacos", "Paella", "Curry", "Salad"]
    for n, title in enumerate(titles):
        recipe = await store.add_recipe(str(200 + n), title, f"{title} steps", None, user)
        for _ in range(len(titles) - n - 1):
            await store.record_recipe_request_for_user(recipe, None, user)

    gateway.queue(context={"is_favorites": True})
    reply = await dispatcher.handle_turn("U1", "show my favorites")

    lines = reply.split("\n")
    assert lines[:2] == ["Let's see here...", "I've found these recipes: "]
    assert lines[2:7] == ["1.Pho", "2.Ramen", "3.Tacos", "4.Paella", "5.Curry"]
    assert lines[-1] == "Please enter the corresponding number of your choice."

    session = sessions.get_or_create("U1")
    assert [r["title"] for r in session.conversation_context["recipes"]] == titles[:5]
    assert session.ingredient_cuisine is None


# ============================================================================
# INGREDIENTS / CUISINE
# ============================================================================

@pytest.mark.asyncio
async def test_ingredients_miss_queries_recipe_source_and_persists(dispatcher, gateway, store, recipe_client, sessions):
    gateway.queue(context={"is_ingredients": True})
    reply = await dispatcher.handle_turn("U1", "chicken, garlic")

    assert recipe_client.calls == [("find_by_ingredients", "chicken, garlic")]
    assert reply == format_recipe_list(SAMPLE_RECIPES)

    stored = await store.find_ingredient("chicken, garlic")
    assert stored is not None
    assert stored.recipes == SAMPLE_RECIPES

    session = sessions.get_or_create("U1")
    assert session.ingredient_cuisine == stored
    assert session.conversation_context["recipes"] == [r.to_dict() for r in SAMPLE_RECIPES]


@pytest.mark.asyncio
async def test_ingredients_hit_uses_store_only(dispatcher, gateway, store, recipe_client, sessions):
    other = await store.add_user("U2")
    await store.add_ingredient("chicken, garlic", SAMPLE_RECIPES[:3], other)
    await dispatcher.handle_turn("U1", "hi")
    user = sessions.get_or_create("U1").user
    ingredient = await store.find_ingredient("chicken, garlic")
    before = await store.count_requests_for_user(ingredient, user)

    gateway.queue(context={"is_ingredients": True})
    reply = await dispatcher.handle_turn("U1", "chicken, garlic")

    assert recipe_client.calls == []
    assert reply == format_recipe_list(SAMPLE_RECIPES[:3])
    assert await store.count_requests_for_user(ingredient, user) == before + 1


@pytest.mark.asyncio
async def test_same_ingredients_twice_fetches_once(dispatcher, gateway, store, recipe_client, sessions):
    for _ in range(2):
        gateway.queue(context={"is_ingredients": True})
        await dispatcher.handle_turn("U1", "Chicken,  Garlic")

    assert recipe_client.names() == ["find_by_ingredients"]
    ingredient = await store.find_ingredient("chicken, garlic")
    user = sessions.get_or_create("U1").user
    assert await store.count_requests_for_user(ingredient, user) == 2


@pytest.mark.asyncio
async def test_cuisine_entity_looks_up_cuisine(dispatcher, gateway, store, recipe_client, sessions):
    gateway.queue(entities=[("cuisine", "thai")])
    reply = await dispatcher.handle_turn("U1", "I feel like thai food")

    assert recipe_client.calls == [("find_by_cuisine", "thai")]
    assert reply == format_recipe_list(SAMPLE_RECIPES)
    cuisine = await store.find_cuisine("thai")
    assert sessions.get_or_create("U1").ingredient_cuisine == cuisine
    assert await store.find_ingredient("thai") is None


@pytest.mark.asyncio
async def test_concurrent_first_requests_fetch_once(dispatcher, gateway, recipe_client):
    gateway.queue(context={"is_ingredients": True})
    gateway.queue(context={"is_ingredients": True})

    replies = await asyncio.gather(
        dispatcher.handle_turn("U1", "leeks, potatoes"),
        dispatcher.handle_turn("U2", "leeks, potatoes"),
    )

    assert recipe_client.names() == ["find_by_ingredients"]
    assert replies[0] == replies[1] == format_recipe_list(SAMPLE_RECIPES)


# ============================================================================
# SELECTION
# ============================================================================

async def list_recipes(dispatcher, gateway, user_id="U1", text="chicken, garlic"):
    gateway.queue(context={"is_ingredients": True})
    await dispatcher.handle_turn(user_id, text)


async def select(dispatcher, gateway, number, user_id="U1"):
    gateway.queue(context={"is_selection": True, "selection": str(number)})
    return await dispatcher.handle_turn(user_id, str(number))


@pytest.mark.asyncio
@pytest.mark.parametrize("number", [1, 2, 3, 4, 5])
async def test_selection_resolves_candidate_at_position(dispatcher, gateway, store, recipe_client, sessions, number):
    await list_recipes(dispatcher, gateway)
    ingredient = await store.find_ingredient("chicken, garlic")

    reply = await select(dispatcher, gateway, number)

    expected = SAMPLE_RECIPES[number - 1]
    assert recipe_client.calls[1:] == [("get_info_by_id", expected.id), ("get_steps_by_id", expected.id)]
    assert f"servings of *{expected.title}*" in reply
    assert "_Equipment_: knife,cutting board" in reply

    recipe = await store.find_recipe(expected.id)
    assert recipe.instructions == reply
    assert recipe.source_id == ingredient.id

    session = sessions.get_or_create("U1")
    assert session.conversation_context is None
    assert session.ingredient_cuisine is None


@pytest.mark.asyncio
async def test_selection_hit_uses_stored_instructions(dispatcher, gateway, store, recipe_client, sessions, caplog):
    await list_recipes(dispatcher, gateway)
    first = await select(dispatcher, gateway, 2)

    await list_recipes(dispatcher, gateway)
    with caplog.at_level(logging.INFO, logger="souschef.conversation"):
        second = await select(dispatcher, gateway, 2)

    assert second == first
    assert recipe_client.names().count("get_info_by_id") == 1

    recipe = await store.find_recipe(SAMPLE_RECIPES[1].id)
    ingredient = await store.find_ingredient("chicken, garlic")
    user = sessions.get_or_create("U1").user
    assert await store.count_requests_for_user(recipe, user) == 2
    assert await store.count_recipe_requests_for_source(recipe, ingredient) == 2
    assert f"Recipe {recipe.id} picked 2 times from 'chicken, garlic'" in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize("selection", ["0", "6", "-1", "abc"])
async def test_invalid_selection(dispatcher, gateway, recipe_client, sessions, selection):
    await list_recipes(dispatcher, gateway)

    reply = await select(dispatcher, gateway, selection)

    assert reply == INVALID_SELECTION_MESSAGE
    assert recipe_client.names() == ["find_by_ingredients"]
    session = sessions.get_or_create("U1")
    assert session.conversation_context is None
    assert session.ingredient_cuisine is None


@pytest.mark.asyncio
@pytest.mark.parametrize("selection", [float("nan"), float("inf")])
async def test_non_finite_selection_is_invalid(dispatcher, gateway, recipe_client, sessions, selection):
    await list_recipes(dispatcher, gateway)
    gateway.queue(context={"is_selection": True, "selection": selection})

    reply = await dispatcher.handle_turn("U1", "NaN")

    assert reply == INVALID_SELECTION_MESSAGE
    assert recipe_client.names() == ["find_by_ingredients"]
    assert sessions.get_or_create("U1").conversation_context is None


@pytest.mark.asyncio
async def test_selection_beyond_short_list(dispatcher, gateway, recipe_client, sessions):
    recipe_client.recipes = SAMPLE_RECIPES[:2]
    await list_recipes(dispatcher, gateway)

    reply = await select(dispatcher, gateway, 3)

    assert reply == INVALID_SELECTION_MESSAGE
    assert "get_info_by_id" not in recipe_client.names()
    assert sessions.get_or_create("U1").conversation_context is None


@pytest.mark.asyncio
async def test_selection_from_favorites_is_a_cache_hit(dispatcher, gateway, store, recipe_client, sessions):
    user = await store.add_user("U1")
    recipe = await store.add_recipe("300", "Pho", "Pho steps", None, user)

    gateway.queue(context={"is_favorites": True})
    await dispatcher.handle_turn("U1", "favorites")
    reply = await select(dispatcher, gateway, 1)

    assert reply == "Pho steps"
    assert recipe_client.calls == []
    assert await store.count_requests_for_user(recipe, user) == 2


# ============================================================================
# FAILURES
# ============================================================================

@pytest.mark.asyncio
async def test_gateway_failure_sends_fallback_and_clears(dispatcher, gateway, sessions):
    await list_recipes(dispatcher, gateway)
    gateway.error = GatewayError("service unavailable")

    reply = await dispatcher.handle_turn("U1", "2")

    assert reply == FALLBACK_MESSAGE
    session = sessions.get_or_create("U1")
    assert session.conversation_context is None
    assert session.ingredient_cuisine is None


@pytest.mark.asyncio
async def test_recipe_source_failure_persists_nothing(dispatcher, gateway, store, recipe_client, sessions):
    recipe_client.error = RecipeSourceError("Spoonacular API error (500)")
    gateway.queue(context={"is_ingredients": True})

    reply = await dispatcher.handle_turn("U1", "chicken, garlic")

    assert reply == FALLBACK_MESSAGE
    assert await store.find_ingredient("chicken, garlic") is None
    assert sessions.get_or_create("U1").conversation_context is None


@pytest.mark.asyncio
async def test_store_failure_sends_fallback_and_clears(dispatcher, gateway, store, recipe_client, sessions, monkeypatch):
    await list_recipes(dispatcher, gateway)
    assert sessions.get_or_create("U1").ingredient_cuisine is not None

    async def broken_find(text):
        raise StoreError("Recipe store error: disk I/O error")

    monkeypatch.setattr(store, "find_ingredient", broken_find)
    gateway.queue(context={"is_ingredients": True})

    reply = await dispatcher.handle_turn("U1", "leeks")

    assert reply == FALLBACK_MESSAGE
    assert recipe_client.names() == ["find_by_ingredients"]
    session = sessions.get_or_create("U1")
    assert session.conversation_context is None
    assert session.ingredient_cuisine is None


@pytest.mark.asyncio
async def test_user_record_failure_sends_fallback(dispatcher, gateway, store, sessions, monkeypatch):
    async def broken_add_user(user_id):
        raise StoreError("Recipe store error: database is locked")

    monkeypatch.setattr(store, "add_user", broken_add_user)

    reply = await dispatcher.handle_turn("U1", "hi")

    assert reply == FALLBACK_MESSAGE
    session = sessions.get_or_create("U1")
    assert session.user is None
    assert session.conversation_context is None
    assert not session.started


@pytest.mark.asyncio
async def test_next_turn_after_failure_starts_over(dispatcher, gateway):
    gateway.error = GatewayError("timeout")
    await dispatcher.handle_turn("U1", "hi")
    gateway.error = None

    reply = await dispatcher.handle_turn("U1", "hi")

    assert reply == "Hi! I'm Sous Chef.\nWhat would you like to cook?"
    assert gateway.calls[-1]["context"] == {}


# ============================================================================
# CONCURRENCY / TRANSPORT
# ============================================================================

@pytest.mark.asyncio
async def test_turns_of_one_user_never_overlap(dispatcher, gateway):
    in_flight = 0
    peak = 0
    original = gateway.message

    async def slow_message(text, context=None, workspace_id=None):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return await original(text, context, workspace_id)

    gateway.message = slow_message
    await asyncio.gather(*(dispatcher.handle_turn("U1", f"msg {n}") for n in range(3)))

    assert peak == 1
    assert [c["text"] for c in gateway.calls] == ["msg 0", "msg 1", "msg 2"]


@pytest.mark.asyncio
async def test_process_message_sends_reply_to_sender(dispatcher):
    transport = RecordingTransport()
    await dispatcher.process_message(InboundMessage(user_id="U1", text="hello", reply_to=None), transport)
    assert transport.sent == [("U1", "Hi! I'm Sous Chef.\nWhat would you like to cook?")]


@pytest.mark.asyncio
async def test_process_message_survives_send_failure(dispatcher):
    transport = RecordingTransport(fail=True)
    await dispatcher.process_message(InboundMessage(user_id="U1", text="hello", reply_to=None), transport)
    assert transport.sent == []


def test_candidate_ids_are_strings():
    assert RecipeCandidate.from_dict({"id": 715538, "title": "Bruschetta"}).id == "715538"
