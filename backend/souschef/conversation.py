"""Conversation Manager
Drives one chat turn: asks the conversation service what the user meant,
picks the matching handler and answers from the recipe store, falling back
to Spoonacular for anything not cached yet.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from config import MAX_CANDIDATES
from souschef.formatting import format_recipe_instructions, format_recipe_list
from souschef.locks import KeyedLock
from souschef.logger import get_logger
from souschef.models import NluResponse, RecipeCandidate, SourceKind
from souschef.nlu import WatsonAssistant
from souschef.session import Session, SessionManager
from souschef.spoonacular import SpoonacularClient
from souschef.store import SQLiteRecipeStore, normalize_key
from souschef.transports import ChatTransport, InboundMessage

logger = get_logger(__name__)

FALLBACK_MESSAGE = "Sorry, something went wrong! Say anything to me to start over..."
INVALID_SELECTION_MESSAGE = "Invalid selection! Say anything to start over..."

# key prefix for the per-recipe lookup lock
RECIPE_LOCK = "recipe"


class TurnMode(str, Enum):
    """Handler a turn is routed to, in order of precedence"""
    FAVORITES = "favorites"
    INGREDIENTS = "ingredients"
    CUISINE = "cuisine"
    SELECTION = "selection"
    START = "start"


@dataclass
class Turn:
    mode: TurnMode
    # ingredient text / cuisine name (str) or selection number (int)
    argument: Union[str, int, None] = None


def parse_selection(value: Any) -> int:
    """Selection number from the context, -1 when absent or unparsable"""
    if value is None or isinstance(value, bool):
        return -1
    if isinstance(value, (int, float)):
        try:
            return int(value)
        except (ValueError, OverflowError):
            return -1
    match = re.match(r"\s*([+-]?\d+)", str(value))
    return int(match.group(1)) if match else -1


def classify_turn(response: NluResponse, text: str) -> Turn:
    """Map the conversation service's answer to a turn mode"""
    context = response.context or {}
    if context.get("is_favorites"):
        return Turn(TurnMode.FAVORITES)
    if context.get("is_ingredients"):
        return Turn(TurnMode.INGREDIENTS, text)
    if response.entities and response.entities[0].entity == "cuisine":
        return Turn(TurnMode.CUISINE, response.entities[0].value)
    if context.get("is_selection"):
        return Turn(TurnMode.SELECTION, parse_selection(context.get("selection")))
    return Turn(TurnMode.START)


class TurnDispatcher:
    """Routes chat messages through the conversation service to the turn handlers"""

    def __init__(
        self,
        sessions: SessionManager,
        gateway: WatsonAssistant,
        store: SQLiteRecipeStore,
        recipe_client: SpoonacularClient,
        workspace_id: Optional[str] = None,
        max_candidates: int = MAX_CANDIDATES,
    ):
        self.sessions = sessions
        self.gateway = gateway
        self.store = store
        self.recipe_client = recipe_client
        self.workspace_id = workspace_id
        self.max_candidates = max_candidates
        self._key_locks = KeyedLock()

    async def process_message(self, message: InboundMessage, transport: ChatTransport) -> None:
        """Handle one inbound message and send the reply back to its sender"""
        reply = await self.handle_turn(message.user_id, message.text)
        try:
            await transport.send_text(message, reply)
        except Exception:
            logger.exception(f"Could not deliver reply to {message.user_id}", extra={"user_id": message.user_id})

    async def handle_turn(self, user_id: str, text: str) -> str:
        """Run one turn for the user and return the reply text"""
        session = self.sessions.get_or_create(user_id)
        async with session.lock:
            try:
                return await self._run_turn(session, text)
            except Exception:
                logger.exception(f"Turn failed for {user_id}", extra={"user_id": user_id})
                self.sessions.clear(session)
                return FALLBACK_MESSAGE

    async def _run_turn(self, session: Session, text: str) -> str:
        response = await self.gateway.message(
            text, session.conversation_context or {}, workspace_id=self.workspace_id
        )
        session.conversation_context = response.context
        turn = classify_turn(response, text)
        logger.debug(f"Turn for {session.user_id} classified as {turn.mode.value}")

        if turn.mode == TurnMode.FAVORITES:
            return await self.handle_favorites(session)
        if turn.mode == TurnMode.INGREDIENTS:
            return await self.handle_ingredients(session, turn.argument)
        if turn.mode == TurnMode.CUISINE:
            return await self.handle_cuisine(session, turn.argument)
        if turn.mode == TurnMode.SELECTION:
            return await self.handle_selection(session, turn.argument)
        return await self.handle_start(session, response)

    # =========================================================================
    # TURN HANDLERS
    # =========================================================================

    async def handle_start(self, session: Session, response: NluResponse) -> str:
        reply = "\n".join(response.output_text)
        await self._ensure_user(session)
        session.started = True
        return reply

    async def handle_favorites(self, session: Session) -> str:
        await self._ensure_user(session)
        recipes = await self.store.find_favorite_recipes_for_user(session.user, self.max_candidates)
        self._offer_recipes(session, recipes)
        session.ingredient_cuisine = None
        return format_recipe_list(recipes)

    async def handle_ingredients(self, session: Session, ingredients: str) -> str:
        return await self._handle_lookup(session, SourceKind.INGREDIENT, ingredients)

    async def handle_cuisine(self, session: Session, cuisine: str) -> str:
        return await self._handle_lookup(session, SourceKind.CUISINE, cuisine)

    async def _handle_lookup(self, session: Session, kind: SourceKind, text: str) -> str:
        """Read-through lookup of recipes for an ingredient list or a cuisine"""
        await self._ensure_user(session)
        if kind == SourceKind.INGREDIENT:
            find, add, record = (self.store.find_ingredient, self.store.add_ingredient,
                                 self.store.record_ingredient_request_for_user)
            fetch = self.recipe_client.find_by_ingredients
        else:
            find, add, record = (self.store.find_cuisine, self.store.add_cuisine,
                                 self.store.record_cuisine_request_for_user)
            fetch = self.recipe_client.find_by_cuisine

        async with self._key_locks.hold((kind, normalize_key(text))):
            source = await find(text)
            if source:
                logger.info(f"{kind.value.title()} exists for '{text}'. Returning recipes from datastore.")
                await record(source, session.user)
            else:
                logger.info(f"{kind.value.title()} does not exist for '{text}'. Querying Spoonacular for recipes.")
                matching = await fetch(text)
                source = await add(text, matching, session.user)

        self._offer_recipes(session, source.recipes)
        session.ingredient_cuisine = source
        return format_recipe_list(source.recipes)

    async def handle_selection(self, session: Session, selection: int) -> str:
        candidates = (session.conversation_context or {}).get("recipes") or []
        if not 1 <= selection <= min(self.max_candidates, len(candidates)):
            self.sessions.clear(session)
            return INVALID_SELECTION_MESSAGE

        await self._ensure_user(session)
        candidate = RecipeCandidate.from_dict(candidates[selection - 1])
        recipe_id = candidate.id

        async with self._key_locks.hold((RECIPE_LOCK, recipe_id)):
            recipe = await self.store.find_recipe(recipe_id)
            if recipe:
                logger.info(f"Recipe exists for {recipe_id}. Returning recipe steps from datastore.")
                await self.store.record_recipe_request_for_user(recipe, session.ingredient_cuisine, session.user)
                if session.ingredient_cuisine:
                    picks = await self.store.count_recipe_requests_for_source(recipe, session.ingredient_cuisine)
                    logger.info(
                        f"Recipe {recipe_id} picked {picks} times from '{session.ingredient_cuisine.name}'",
                        extra={"user_id": session.user_id},
                    )
            else:
                logger.info(f"Recipe does not exist for {recipe_id}. Querying Spoonacular for details.")
                info = await self.recipe_client.get_info_by_id(recipe_id)
                steps = await self.recipe_client.get_steps_by_id(recipe_id)
                instructions = format_recipe_instructions(info, steps)
                recipe = await self.store.add_recipe(
                    recipe_id, info.title, instructions, session.ingredient_cuisine, session.user
                )

        self.sessions.clear(session)
        return recipe.instructions

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _ensure_user(self, session: Session) -> None:
        if session.user is None:
            session.user = await self.store.add_user(session.user_id)

    @staticmethod
    def _offer_recipes(session: Session, recipes: list[RecipeCandidate]) -> None:
        """Attach the list the next selection number refers to"""
        if session.conversation_context is None:
            session.conversation_context = {}
        session.conversation_context["recipes"] = [r.to_dict() for r in recipes]


