"""
Spoonacular API Integration
Recipe searches (by ingredients or cuisine) and recipe details for the selection step
"""

import asyncio
from typing import Optional

import httpx

from config import (
    SPOONACULAR_API_KEY,
    SPOONACULAR_BASE_URL,
    HTTP_TIMEOUT,
    HTTP_MAX_RETRIES,
    MAX_CANDIDATES,
)
from souschef.errors import RecipeSourceError
from souschef.logger import get_logger
from souschef.models import RecipeCandidate, RecipeInfo, RecipeStep

logger = get_logger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 522)


class SpoonacularClient:
    """Wrapper for the Spoonacular endpoints Sous Chef needs"""

    def __init__(
        self,
        api_key: str = SPOONACULAR_API_KEY,
        base_url: str = SPOONACULAR_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        max_retries: int = HTTP_MAX_RETRIES,
        retry_delay: float = 1.0,
        number: int = MAX_CANDIDATES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.number = number
        self._transport = transport

    async def _make_request(self, endpoint: str, params: Optional[dict] = None):
        """GET an endpoint, retrying transient failures; raises RecipeSourceError"""
        params = dict(params or {})
        params["apiKey"] = self.api_key
        url = f"{self.base_url}{endpoint}"

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.get(url, params=params)
                    response.raise_for_status()
                    return response.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status in RETRYABLE_STATUSES and not last_attempt:
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                    continue
                if status == 402:
                    raise RecipeSourceError("Spoonacular quota exceeded (402)") from e
                raise RecipeSourceError(f"Spoonacular API error ({status}) for {endpoint}") from e
            except httpx.TimeoutException as e:
                if not last_attempt:
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                    continue
                raise RecipeSourceError(f"Spoonacular timed out after {self.timeout} seconds") from e
            except httpx.RequestError as e:
                raise RecipeSourceError(f"Spoonacular network error: {e}") from e
            except ValueError as e:
                raise RecipeSourceError(f"Spoonacular returned invalid JSON for {endpoint}") from e

        raise RecipeSourceError(f"Spoonacular request failed after {self.max_retries} attempts")

    # ========================================================================
    # SEARCH ENDPOINTS
    # ========================================================================

    async def find_by_ingredients(self, ingredients: str) -> list[RecipeCandidate]:
        """Recipes that use the given comma-separated ingredients"""
        params = {
            "ingredients": ingredients,
            "number": self.number,
            "ranking": 1,
            "ignorePantry": True,
        }
        result = await self._make_request("/recipes/findByIngredients", params)
        logger.info(f"Spoonacular matched {len(result or [])} recipes for ingredients '{ingredients}'")
        return [RecipeCandidate.from_dict(r) for r in result or []]

    async def find_by_cuisine(self, cuisine: str) -> list[RecipeCandidate]:
        """Recipes of the given cuisine"""
        params = {"cuisine": cuisine, "number": self.number}
        result = await self._make_request("/recipes/complexSearch", params)
        recipes = (result or {}).get("results", [])
        logger.info(f"Spoonacular matched {len(recipes)} recipes for cuisine '{cuisine}'")
        return [RecipeCandidate.from_dict(r) for r in recipes]

    # ========================================================================
    # DETAIL ENDPOINTS (only called when the user selects a recipe)
    # ========================================================================

    async def get_info_by_id(self, recipe_id: str) -> RecipeInfo:
        result = await self._make_request(f"/recipes/{recipe_id}/information", {"includeNutrition": False})
        if not isinstance(result, dict):
            raise RecipeSourceError(f"No information returned for recipe {recipe_id}")
        return RecipeInfo.from_dict(result)

    async def get_steps_by_id(self, recipe_id: str) -> list[RecipeStep]:
        """Steps of every instruction block, in order"""
        result = await self._make_request(f"/recipes/{recipe_id}/analyzedInstructions")
        steps = []
        for block in result or []:
            steps.extend(RecipeStep.from_dict(s) for s in block.get("steps", []))
        return steps
