"""
FANTASY EXCHANGE: Runic Index data models

Pydantic models for the hourly market, player ledgers and trade receipts.
Field names are snake_case in Python and camelCase on the wire / in KV, so
cached JSON stays readable by the browser client as-is.

Usage:
    state = MarketHourState.model_validate(kv_get_json(key))
    payload = state.to_wire()
"""

from __future__ import annotations

import time
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def round2(value: float) -> float:
    # + 0.0 folds -0.0 into 0.0
    return round(float(value), 2) + 0.0


def now_ms() -> int:
    return int(time.time() * 1000)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """camelCase dict with unset optionals omitted."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ═══════════════════════════════════════════════════════════════
# Market
# ═══════════════════════════════════════════════════════════════

class Company(WireModel):
    id: str                               # ticker, ^[A-Z]{3,6}$
    name: str
    concept: str = ""
    price: float
    prev_price: float
    change: float = 0.0
    change_pct: float = 0.0
    status: Literal["LISTED"] = "LISTED"
    logo_prompt: Optional[str] = None
    logo_url: Optional[str] = None


class NewsItem(WireModel):
    id: str
    kind: Literal["BIG", "COMPANY"]
    hour_key: str
    title: str
    body: str = ""
    impact: str = ""
    company_ids: Optional[list[str]] = None
    image_url: Optional[str] = None
    image_prompt: Optional[str] = None


class DelistedCompany(WireModel):
    id: str
    delisted_at_hour_key: str
    delist_price: float
    reason: str = "Delisted."


class MarketHourState(WireModel):
    version: int = 1
    hour_key: str
    generated_at: int = Field(default_factory=now_ms)
    source: Literal["seed", "full", "delta"] = "full"
    companies: list[Company]
    delisted: list[DelistedCompany] = Field(default_factory=list)
    news: list[NewsItem] = Field(default_factory=list)

    def company(self, ticker: str) -> Optional[Company]:
        ticker = (ticker or "").upper()
        return next((c for c in self.companies if c.id == ticker), None)

    def price_map(self) -> dict[str, float]:
        return {c.id: c.price for c in self.companies}

    def tickers(self) -> list[str]:
        return [c.id for c in self.companies]


# ═══════════════════════════════════════════════════════════════
# Accounts
# ═══════════════════════════════════════════════════════════════

TradeSide = Literal["BUY", "SELL", "SHORT"]


class PlayerAccount(WireModel):
    version: int = 1
    player_id: str
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    cash: float
    positions: dict[str, int] = Field(default_factory=dict)   # ticker → signed shares (negative = short)


class AccountSnapshot(PlayerAccount):
    net_worth: float
    bankrupt: bool


class TradeReceipt(WireModel):
    ok: bool = True
    hour_key: str
    side: TradeSide
    qty: int
    company_id: str
    price: float
    cash_delta: float
    position_delta: int
    account: AccountSnapshot
