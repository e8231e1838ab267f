"""
Recipe Data Model
Defines the dataclasses shared by the store, the recipe client and the NLU gateway
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SourceKind(str, Enum):
    """What a recipe list was looked up by"""
    INGREDIENT = "ingredient"
    CUISINE = "cuisine"


@dataclass
class RecipeCandidate:
    """A recipe offered to the user in a numbered list"""
    id: str
    title: str

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title}

    @classmethod
    def from_dict(cls, data: dict) -> "RecipeCandidate":
        return cls(id=str(data.get("id", "")), title=data.get("title", ""))


@dataclass
class RecipeInfo:
    """Recipe metadata needed for the instructions intro"""
    title: str
    ready_in_minutes: int
    servings: int

    @classmethod
    def from_dict(cls, data: dict) -> "RecipeInfo":
        return cls(
            title=data.get("title", ""),
            ready_in_minutes=data.get("readyInMinutes", 0),
            servings=data.get("servings", 0),
        )


@dataclass
class RecipeStep:
    """One step of a recipe's instructions"""
    step: str
    equipment: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "RecipeStep":
        return cls(
            step=data.get("step", ""),
            equipment=[e.get("name", "") for e in data.get("equipment") or []],
        )


@dataclass
class User:
    id: int
    user_id: str


@dataclass
class IngredientCuisine:
    """Stored ingredient or cuisine lookup with the recipes it matched"""
    id: int
    kind: SourceKind
    name: str
    recipes: list[RecipeCandidate] = field(default_factory=list)


@dataclass
class StoredRecipe:
    """A recipe whose rendered instructions are cached in the store"""
    id: str
    title: str
    instructions: str
    source_id: Optional[int] = None   # originating ingredient/cuisine record


@dataclass
class NluEntity:
    entity: str
    value: str


@dataclass
class NluResponse:
    """Result of one message sent to the conversation service"""
    context: dict[str, Any] = field(default_factory=dict)
    entities: list[NluEntity] = field(default_factory=list)
    output_text: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "NluResponse":
        return cls(
            context=data.get("context") or {},
            entities=[
                NluEntity(entity=e.get("entity", ""), value=e.get("value", ""))
                for e in data.get("entities") or []
            ],
            output_text=list((data.get("output") or {}).get("text") or []),
        )
