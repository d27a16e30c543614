from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .services.units import UnitType

MAX_STORES_PER_QUOTE = 20
MAX_ITEMS_PER_QUOTE = 500


class Quantity(BaseModel):
    value: float
    unit: UnitType


class QuoteRequestItem(BaseModel):
    ingredientName: str = Field(min_length=1, max_length=255)
    required: Quantity


class QuoteRequest(BaseModel):
    stores: List[str] = Field(min_length=1, max_length=MAX_STORES_PER_QUOTE)
    postcode: Optional[str] = Field(default=None, max_length=16)
    items: List[QuoteRequestItem] = Field(min_length=1, max_length=MAX_ITEMS_PER_QUOTE)


class RecipeIngredient(BaseModel):
    name: str = ""
    canonicalName: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("canonicalName", "canonical_name"),
    )
    quantity: float
    unit: Optional[str] = None
    category: Optional[str] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @property
    def lookup_name(self) -> str:
        if self.canonicalName and self.canonicalName.strip():
            return self.canonicalName
        return self.name


class Recipe(BaseModel):
    id: str
    name: Optional[str] = None
    servings: float
    ingredients: List[RecipeIngredient] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class MenuItem(BaseModel):
    recipeId: str = Field(validation_alias=AliasChoices("recipeId", "recipe_id"))
    servings: float

    model_config = ConfigDict(populate_by_name=True)


class MenuQuoteRequest(BaseModel):
    stores: List[str] = Field(min_length=1, max_length=MAX_STORES_PER_QUOTE)
    postcode: Optional[str] = Field(default=None, max_length=16)
    recipes: List[Recipe] = Field(default_factory=list)
    menu: List[MenuItem] = Field(min_length=1)


class PackSize(BaseModel):
    value: float
    unit: UnitType


class LineItem(BaseModel):
    canonicalItemId: str
    canonicalName: str
    storeProductId: str
    productTitle: str
    packSize: PackSize
    required: Quantity
    packsNeeded: int
    price: float
    unitPrice: Optional[float] = None
    lineTotal: float
    consumedEstimate: float
    currency: str
    promoText: Optional[str] = None
    inStock: Optional[bool] = None
    productUrl: Optional[str] = None
    imageUrl: Optional[str] = None
    priceSource: Literal["cached", "stale"]
    fetchedAt: datetime


class MissingItemSchema(BaseModel):
    ingredientName: str
    reason: str


class StoreQuote(BaseModel):
    store: str
    basketTotal: float
    consumedEstimate: float
    lastUpdated: datetime
    lineItems: List[LineItem] = Field(default_factory=list)
    missingItems: List[MissingItemSchema] = Field(default_factory=list)
    missingCount: int = 0
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class QuoteMeta(BaseModel):
    postcodeArea: Optional[str] = None
    ttlHours: int


class QuoteResponse(BaseModel):
    currency: str
    quotes: List[StoreQuote]
    meta: QuoteMeta
