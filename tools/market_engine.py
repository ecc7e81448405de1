"""
FANTASY EXCHANGE: Runic Index Market Engine

One market state per UTC hour, generated once and cached:

    get_or_create_market_hour("2026-02-02T18")
        ├─ cached?            → return stored state
        ├─ lock lost?         → poll until the winner publishes, else MarketBusyError
        └─ lock won           → previous state → generate → validate → store

Generation modes:
    seed   no previous state in delta mode; the baked-in opening market, no LLM
    full   the model re-emits all 25 companies; reconciled against the previous hour
    delta  the model returns one price update per existing ticker plus optional
           delist/replacement pairs

The model is never trusted: every batch is validated as a whole and either
becomes the hour's state or is rejected with the raw output attached.
"""

import json
import logging
import math
import re
from typing import Optional

import openai
from pydantic import ValidationError

from config.keys import delisting_history_key, market_hour_key, market_hour_lock_key
from config.settings import LLMConfig, MarketConfig
from config.storage import (
    kv_delete, kv_get_json, kv_get_raw, kv_set_json, kv_set_json_if_absent,
    kv_try_acquire_lock, kv_wait_for_json,
)
from tools.hour_key import prev_utc_hour_key
from tools.images import generate_company_logo, generate_news_image
from tools.llm_client import LLMError, chat_completion, parse_json_object
from tools.market_models import Company, DelistedCompany, MarketHourState, NewsItem, round2
from tools.market_seed import make_seed_market_hour

logger = logging.getLogger("fantasyx.market")

TICKER_RE = re.compile(MarketConfig.TICKER_PATTERN)


class MarketGenerationError(RuntimeError):
    """The model produced nothing usable for this hour. `raw` is its output."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class MarketBusyError(RuntimeError):
    """Another worker holds the hour lock and has not published yet."""


# ═══════════════════════════════════════════════
# Hour cache + lock
# ═══════════════════════════════════════════════

def _coerce_state(value, hour_key: str) -> Optional[MarketHourState]:
    if not isinstance(value, dict) or value.get("hourKey") != hour_key:
        return None
    if not isinstance(value.get("companies"), list):
        return None
    try:
        return MarketHourState.model_validate(value)
    except ValidationError as e:
        logger.warning(f"Stored market for {hour_key} failed validation: {e.error_count()} errors")
        return None


def load_market_hour(hour_key: str) -> Optional[MarketHourState]:
    """Cached state for an hour bucket, or None. Never generates."""
    return _coerce_state(kv_get_json(market_hour_key(hour_key)), hour_key)


def find_previous_state(hour_key: str, lookback_hours: int = None) -> Optional[MarketHourState]:
    """Most recent stored state before `hour_key`, walking back hour by hour."""
    lookback_hours = MarketConfig.PREV_LOOKBACK_HOURS if lookback_hours is None else lookback_hours
    key = hour_key
    for _ in range(max(0, lookback_hours)):
        prev_key = prev_utc_hour_key(key)
        if prev_key == key:
            return None
        key = prev_key
        state = load_market_hour(key)
        if state is not None:
            return state
    return None


def _release_lock(lock_key: str, token: str) -> None:
    # Only delete a lock we still own; an expired one may belong to someone else now.
    if kv_get_raw(lock_key) == token:
        kv_delete(lock_key)


def delisting_history(ticker: str) -> list[DelistedCompany]:
    """Past delistings of `ticker`, oldest first. Unreadable entries are skipped."""
    stored = kv_get_json(delisting_history_key(ticker))
    history = []
    for entry in stored if isinstance(stored, list) else []:
        try:
            history.append(DelistedCompany.model_validate(entry))
        except ValidationError:
            logger.warning(f"Skipping unreadable delisting record for {ticker}")
    return history


def record_delistings(state: MarketHourState) -> None:
    """Append this hour's delistings to each ticker's history so idle holders settle later."""
    for d in state.delisted:
        history = [h for h in delisting_history(d.id) if h.delisted_at_hour_key != d.delisted_at_hour_key]
        history.append(d)
        history.sort(key=lambda h: h.delisted_at_hour_key)
        kv_set_json(delisting_history_key(d.id), [h.to_wire() for h in history],
                    ex_seconds=MarketConfig.DELIST_HISTORY_TTL_SECONDS)


def get_or_create_market_hour(hour_key: str) -> MarketHourState:
    """Return the market state for `hour_key`, generating it at most once."""
    key = market_hour_key(hour_key)
    cached = load_market_hour(hour_key)
    if cached is not None:
        return cached

    lock_key = market_hour_lock_key(hour_key)
    token = kv_try_acquire_lock(lock_key, MarketConfig.LOCK_TTL_SECONDS)
    if token is None:
        logger.info(f"Market {hour_key}: lock held elsewhere, waiting up to {MarketConfig.LOCK_WAIT_SECONDS}s")
        published = kv_wait_for_json(
            key,
            timeout=MarketConfig.LOCK_WAIT_SECONDS,
            initial_delay=MarketConfig.LOCK_POLL_INITIAL,
            max_delay=MarketConfig.LOCK_POLL_MAX,
        )
        state = _coerce_state(published, hour_key)
        if state is not None:
            return state
        raise MarketBusyError("The market is still being generated for this hour. Try again.")

    try:
        cached = load_market_hour(hour_key)
        if cached is not None:
            return cached

        prev = find_previous_state(hour_key)
        state = generate_market_hour(hour_key, prev)
        if MarketConfig.IMAGES_ENABLED and LLMConfig.has_gemini_key():
            state = attach_images(state, prev)

        # NX: if our lock expired mid-generation, whoever published first wins
        raw = kv_set_json_if_absent(key, state.to_wire(), ex_seconds=MarketConfig.MARKET_TTL_SECONDS)
        if raw is None:
            existing = load_market_hour(hour_key)
            if existing is not None:
                logger.warning(f"Market {hour_key}: another worker published first, discarding ours")
                return existing
            # Unreadable value under the key; replace it
            raw = kv_set_json(key, state.to_wire(), ex_seconds=MarketConfig.MARKET_TTL_SECONDS)

        record_delistings(state)
        logger.info(f"Market {hour_key}: stored ({state.source}, {len(state.companies)} companies, "
                    f"{len(state.delisted)} delisted)")
        # Hand back exactly what later readers will see
        return MarketHourState.model_validate_json(raw)
    except Exception:
        _release_lock(lock_key, token)
        raise


# ═══════════════════════════════════════════════
# Generation
# ═══════════════════════════════════════════════

def generate_market_hour(hour_key: str, prev: Optional[MarketHourState],
                         mode: str = None) -> MarketHourState:
    """Produce (but do not store) the state for `hour_key`."""
    mode = (mode or MarketConfig.GENERATION_MODE).lower()
    if mode not in ("delta", "full"):
        logger.warning(f"Unknown MARKET_GENERATION_MODE={mode!r}, using delta")
        mode = "delta"

    if prev is None and mode == "delta":
        logger.info(f"Market {hour_key}: no previous state, seeding")
        return make_seed_market_hour(hour_key)

    use_delta = prev is not None and mode == "delta"
    prompt = build_delta_prompt(hour_key, prev) if use_delta else build_full_prompt(hour_key, prev)

    try:
        result = chat_completion(prompt, "market")
    except LLMError as e:
        raise MarketGenerationError(str(e), raw=e.raw)
    except openai.OpenAIError as e:
        raise MarketGenerationError(f"Market LLM call failed: {e}")

    raw = result.text
    if not raw:
        raise MarketGenerationError(f"Market LLM returned empty content. Hint: {result.hint}".strip(), raw="")

    try:
        if use_delta:
            return parse_delta_response(raw, hour_key, prev)
        return parse_full_response(raw, hour_key, prev)
    except MarketGenerationError:
        raise
    except (LLMError, ValidationError, ValueError, TypeError) as e:
        raise MarketGenerationError(str(e) or "Market generation failed.", raw=raw)


def attach_images(state: MarketHourState, prev: Optional[MarketHourState] = None) -> MarketHourState:
    """Best-effort logos for new listings and illustrations for big news.

    Companies already listed last hour keep whatever logo they carried forward,
    including none; a failed logo is not retried every hour.
    """
    listed_before = set(prev.tickers()) if prev else set()
    for company in state.companies:
        if company.id in listed_before or company.logo_url or not company.logo_prompt:
            continue
        url = generate_company_logo(company.name, company.logo_prompt)
        if url:
            company.logo_url = url
    for item in state.news:
        if item.kind == "BIG" and item.image_prompt and not item.image_url:
            item.image_url = generate_news_image(item.image_prompt)
    return state


# ═══════════════════════════════════════════════
# Prompts
# ═══════════════════════════════════════════════

_WORLD_RULES = f"""You are the MARKET SIMULATOR for a fictional D&D-style fantasy stock market.
Each company is a FANTASY CONCEPT (Fireball, Orc Mercenaries, Dark Patrons...).
Events are game-y and legible: rumors, guild edicts, dragon attacks, plagues, crusades.
Keep the world narrative coherent across hours and move prices because of it.

RULES:
- Exactly {MarketConfig.COMPANY_COUNT} LISTED companies after your update.
- Tickers: 3-6 uppercase letters A-Z, unique, mnemonic (no AAA/ABC placeholders).
- A NEW listing must start between {MarketConfig.LISTING_START_PRICE_MIN} and {MarketConfig.LISTING_START_PRICE_MAX}.
- Existing prices must stay positive; most hourly moves within -12%..+12%.
- Realistic price variety; never near-identical prices.
- At most {MarketConfig.MAX_DELISTINGS_PER_HOUR} delisting(s) this hour, each replaced by a new concept.
- bigNews: 2-4 items. title <= 72 chars, body <= 240, impact <= 120.
- Company news: title <= 72 chars, body <= 180 (may be empty), impact <= 120.
- logoPrompt / imagePrompt: <= 160 chars, no text, no watermark.

Respond with STRICT JSON ONLY. No markdown fences, no commentary."""


def _prev_summary(prev: Optional[MarketHourState]) -> str:
    if prev is None:
        return "null"
    return json.dumps({
        "hourKey": prev.hour_key,
        "companies": [{"id": c.id, "name": c.name, "concept": c.concept, "price": c.price}
                      for c in prev.companies],
        "newsHeadlines": [{"kind": n.kind, "title": n.title} for n in prev.news[:8]],
    }, ensure_ascii=False)


def build_full_prompt(hour_key: str, prev: Optional[MarketHourState]) -> str:
    prev_ids = ", ".join(prev.tickers()) if prev else "(none: this is the first hour, every company is NEW)"
    return f"""{_WORLD_RULES}

OUTPUT SHAPE:
{{
  "bigNews": [{{"id": "string", "title": "string", "body": "string", "impact": "string", "imagePrompt": "string"}}],
  "companies": [{{"id": "string", "name": "string", "concept": "string", "price": number,
                 "companyNewsTitle": "string", "companyNewsBody": "string", "companyNewsImpact": "string",
                 "logoPrompt": "string"}}],
  "delist": [{{"id": "string", "reason": "string"}}]
}}

Keep the previous companies unless you delist one; a delisted ticker disappears from
companies[], appears in delist[], and a NEW company takes its place.

PREVIOUS HOUR: {_prev_summary(prev)}
PREVIOUS LISTED IDS: {prev_ids}
CURRENT HOURKEY (UTC): {hour_key}"""


def build_delta_prompt(hour_key: str, prev: MarketHourState) -> str:
    return f"""{_WORLD_RULES}

You are UPDATING the previous hour. Return exactly one entry in updates[] for EVERY
previous ticker ({len(prev.companies)} entries). Names and concepts do not change.

OUTPUT SHAPE:
{{
  "bigNews": [{{"id": "string", "title": "string", "body": "string", "impact": "string", "imagePrompt": "string"}}],
  "updates": [{{"id": "string", "price": number,
               "companyNewsTitle": "string", "companyNewsBody": "string", "companyNewsImpact": "string"}}],
  "delist": [{{"id": "string", "reason": "string",
              "replacement": {{"id": "string", "name": "string", "concept": "string", "price": number,
                              "logoPrompt": "string", "companyNewsTitle": "string",
                              "companyNewsBody": "string", "companyNewsImpact": "string"}}}}]
}}

A delisted ticker still gets its update entry. Its replacement must use a ticker that
was not listed last hour.

PREVIOUS HOUR: {_prev_summary(prev)}
PREVIOUS LISTED IDS: {", ".join(prev.tickers())}
CURRENT HOURKEY (UTC): {hour_key}"""


# ═══════════════════════════════════════════════
# Parsing helpers
# ═══════════════════════════════════════════════

def _text(value, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip() or default


def _ticker(value) -> str:
    return _text(value).upper()


def _number(value) -> Optional[float]:
    """Finite float from a JSON number or numeric string; None otherwise."""
    if isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _list_field(obj: dict, name: str) -> list:
    value = obj.get(name)
    return value if isinstance(value, list) else []


def _in_listing_band(price: Optional[float]) -> bool:
    return (price is not None
            and MarketConfig.LISTING_START_PRICE_MIN <= price <= MarketConfig.LISTING_START_PRICE_MAX)


def _moved_company(prev_company: Company, price: float, logo_prompt: str = "") -> Company:
    price = round2(min(max(price, MarketConfig.MIN_PRICE), MarketConfig.MAX_PRICE))
    prev_price = round2(prev_company.price)
    change = round2(price - prev_price)
    change_pct = round2((price - prev_price) / prev_price * 100) if prev_price > 0 else 0.0
    return Company(
        id=prev_company.id,
        name=prev_company.name,
        concept=prev_company.concept or prev_company.name,
        price=price,
        prev_price=prev_price,
        change=change,
        change_pct=change_pct,
        logo_prompt=logo_prompt or prev_company.logo_prompt,
        logo_url=prev_company.logo_url,
    )


def _carried_company(prev_company: Company) -> Company:
    return _moved_company(prev_company, prev_company.price)


def _new_listing(entry) -> Optional[Company]:
    """A brand-new ticker: valid symbol, non-empty name, in-band start price."""
    if not isinstance(entry, dict):
        return None
    ticker = _ticker(entry.get("id"))
    name = _text(entry.get("name"))
    price = _number(entry.get("price"))
    if not TICKER_RE.match(ticker) or not name or not _in_listing_band(price):
        return None
    price = round2(price)
    return Company(
        id=ticker,
        name=name,
        concept=_text(entry.get("concept"), name),
        price=price,
        prev_price=price,
        logo_prompt=_text(entry.get("logoPrompt")) or None,
    )


def _parse_big_news(items: list, hour_key: str, raw: str) -> list[NewsItem]:
    news = []
    for item in items:
        if len(news) >= MarketConfig.MAX_BIG_NEWS:
            break
        if not isinstance(item, dict):
            continue
        n = len(news)
        news.append(NewsItem(
            id=_text(item.get("id"), f"big-{n}"),
            kind="BIG",
            hour_key=hour_key,
            title=_text(item.get("title"), "Big News"),
            body=_text(item.get("body")),
            impact=_text(item.get("impact")),
            image_prompt=_text(item.get("imagePrompt")) or None,
        ))
    if not news:
        raise MarketGenerationError("Market LLM output missing bigNews items.", raw=raw)
    return news


def _company_news(ticker: str, entry: dict, hour_key: str) -> Optional[NewsItem]:
    title = _text(entry.get("companyNewsTitle"))
    body = _text(entry.get("companyNewsBody"))
    if not title and not body:
        return None
    return NewsItem(
        id=f"co-{ticker}-{hour_key}",
        kind="COMPANY",
        hour_key=hour_key,
        title=title or f"{ticker} Update",
        body=body,
        impact=_text(entry.get("companyNewsImpact")),
        company_ids=[ticker],
    )


def _delisting(prev_company: Company, hour_key: str, reason: str) -> DelistedCompany:
    return DelistedCompany(
        id=prev_company.id,
        delisted_at_hour_key=hour_key,
        delist_price=round2(prev_company.price),
        reason=reason or "Delisted.",
    )


# ═══════════════════════════════════════════════
# Full regeneration
# ═══════════════════════════════════════════════

def parse_full_response(raw: str, hour_key: str, prev: Optional[MarketHourState]) -> MarketHourState:
    """Validate a full 25-company listing and reconcile it with the previous hour."""
    try:
        obj = parse_json_object(raw)
    except LLMError as e:
        raise MarketGenerationError(f"Market {e}", raw=raw)

    prev_by_id = {c.id: c for c in prev.companies} if prev else {}
    entries: dict[str, dict] = {}
    for entry in _list_field(obj, "companies"):
        if not isinstance(entry, dict):
            continue
        ticker = _ticker(entry.get("id"))
        if TICKER_RE.match(ticker) and ticker not in entries:
            entries[ticker] = entry

    big_news = _parse_big_news(_list_field(obj, "bigNews"), hour_key, raw)

    if not prev_by_id:
        companies = [c for c in (_new_listing(e) for e in entries.values()) if c is not None]
        delisted: list[DelistedCompany] = []
    else:
        updated: dict[str, Company] = {}
        for ticker, entry in entries.items():
            if ticker not in prev_by_id:
                continue
            price = _number(entry.get("price"))
            if price is None or price <= 0:
                raise MarketGenerationError(f"Market LLM output had an invalid price for {ticker}.", raw=raw)
            updated[ticker] = _moved_company(prev_by_id[ticker], price, _text(entry.get("logoPrompt")))

        just_delisted = {d.id for d in prev.delisted}
        newcomers = []
        for ticker, entry in entries.items():
            if ticker in prev_by_id:
                continue
            if ticker in just_delisted:
                logger.warning(f"Market {hour_key}: dropped new listing {ticker}, delisted last hour")
                continue
            listing = _new_listing(entry)
            if listing is None:
                logger.warning(f"Market {hour_key}: dropped invalid new listing {ticker}")
                continue
            newcomers.append(listing)

        reasons = {}
        for d in _list_field(obj, "delist"):
            if isinstance(d, dict):
                reasons.setdefault(_ticker(d.get("id")), _text(d.get("reason"), "Delisted."))
        for ticker in reasons:
            if ticker in updated:
                logger.warning(f"Market {hour_key}: ignoring delist of {ticker}, it is still listed")

        # Requested delistings pair first, then other missing tickers, in listing order
        missing = [t for t in prev_by_id if t not in updated]
        missing.sort(key=lambda t: 0 if t in reasons else 1)
        pairs = list(zip(missing[:MarketConfig.MAX_DELISTINGS_PER_HOUR], newcomers))
        replacements = {old: new for old, new in pairs}
        if len(newcomers) > len(pairs):
            logger.warning(f"Market {hour_key}: dropped {len(newcomers) - len(pairs)} unpaired new listing(s)")

        companies, delisted = [], []
        for ticker, prev_company in prev_by_id.items():
            if ticker in updated:
                companies.append(updated[ticker])
            elif ticker in replacements:
                companies.append(replacements[ticker])
                delisted.append(_delisting(prev_company, hour_key, reasons.get(ticker, "Delisted.")))
            else:
                logger.warning(f"Market {hour_key}: {ticker} missing from output, carried forward")
                companies.append(_carried_company(prev_company))

    news = big_news + [
        item for item in (_company_news(c.id, entries[c.id], hour_key) for c in companies if c.id in entries)
        if item is not None
    ]
    return _finalize(hour_key, "full", companies, delisted, news, raw)


# ═══════════════════════════════════════════════
# Delta update
# ═══════════════════════════════════════════════

def parse_delta_response(raw: str, hour_key: str, prev: MarketHourState) -> MarketHourState:
    """Apply one update per existing ticker plus validated delist/replacement pairs."""
    try:
        obj = parse_json_object(raw)
    except LLMError as e:
        raise MarketGenerationError(f"Market {e}", raw=raw)

    if not isinstance(obj.get("updates"), list):
        raise MarketGenerationError("Market delta output missing updates[].", raw=raw)

    prev_by_id = {c.id: c for c in prev.companies}
    update_entries: dict[str, dict] = {}
    moved: dict[str, Company] = {}
    for entry in obj["updates"]:
        if not isinstance(entry, dict):
            raise MarketGenerationError("Market delta update was not an object.", raw=raw)
        ticker = _ticker(entry.get("id"))
        if ticker not in prev_by_id:
            raise MarketGenerationError(f"Market delta update for unknown ticker {ticker or '(blank)'}.", raw=raw)
        if ticker in moved:
            raise MarketGenerationError(f"Market delta had duplicate updates for {ticker}.", raw=raw)
        price = _number(entry.get("price"))
        if price is None or price <= 0:
            raise MarketGenerationError(f"Market delta update for {ticker} had an invalid price.", raw=raw)
        update_entries[ticker] = entry
        moved[ticker] = _moved_company(prev_by_id[ticker], price)

    missing = [t for t in prev_by_id if t not in moved]
    if missing:
        raise MarketGenerationError(f"Market delta missing updates for {', '.join(missing)}.", raw=raw)

    big_news = _parse_big_news(_list_field(obj, "bigNews"), hour_key, raw)

    replacements: dict[str, tuple[Company, dict, DelistedCompany]] = {}
    # A ticker delisted last hour cannot come straight back under the same id
    taken = set(prev_by_id) | {d.id for d in prev.delisted}
    for d in _list_field(obj, "delist"):
        if len(replacements) >= MarketConfig.MAX_DELISTINGS_PER_HOUR:
            logger.warning(f"Market {hour_key}: delist cap reached, ignoring the rest")
            break
        if not isinstance(d, dict):
            continue
        ticker = _ticker(d.get("id"))
        if ticker not in prev_by_id or ticker in replacements:
            logger.warning(f"Market {hour_key}: ignoring delist of {ticker or '(blank)'}, not listed last hour")
            continue
        rep_entry = d.get("replacement")
        listing = _new_listing(rep_entry)
        if listing is None or listing.id in taken:
            logger.warning(f"Market {hour_key}: ignoring delist of {ticker}, replacement invalid")
            continue
        taken.add(listing.id)
        replacements[ticker] = (
            listing, rep_entry, _delisting(prev_by_id[ticker], hour_key, _text(d.get("reason"), "Delisted.")),
        )

    companies, delisted, company_news = [], [], []
    for ticker in prev_by_id:
        if ticker in replacements:
            listing, rep_entry, delisting = replacements[ticker]
            companies.append(listing)
            delisted.append(delisting)
            item = _company_news(listing.id, rep_entry, hour_key)
        else:
            companies.append(moved[ticker])
            item = _company_news(ticker, update_entries[ticker], hour_key)
        if item is not None:
            company_news.append(item)

    return _finalize(hour_key, "delta", companies, delisted, big_news + company_news, raw)


# ═══════════════════════════════════════════════
# Whole-state checks
# ═══════════════════════════════════════════════

def _finalize(hour_key: str, source: str, companies: list[Company],
              delisted: list[DelistedCompany], news: list[NewsItem], raw: str) -> MarketHourState:
    tickers = [c.id for c in companies]
    if len(set(tickers)) != len(tickers):
        raise MarketGenerationError("Market output had duplicate tickers.", raw=raw)
    if len(companies) != MarketConfig.COMPANY_COUNT:
        raise MarketGenerationError(
            f"Market LLM output had {len(companies)} valid unique companies; "
            f"expected {MarketConfig.COMPANY_COUNT}.", raw=raw)
    bad = [t for t in tickers if not TICKER_RE.match(t)]
    if bad:
        raise MarketGenerationError(f"Market output had invalid tickers: {', '.join(bad)}.", raw=raw)
    if any(c.price <= 0 for c in companies):
        raise MarketGenerationError("Market output had a non-positive price.", raw=raw)
    if len({f"{c.price:.2f}" for c in companies}) < MarketConfig.MIN_DISTINCT_PRICES:
        raise MarketGenerationError("Market LLM output prices lack variation.", raw=raw)
    if not any(n.kind == "BIG" for n in news):
        raise MarketGenerationError("Market LLM output missing bigNews items.", raw=raw)
    if len(delisted) > MarketConfig.MAX_DELISTINGS_PER_HOUR:
        raise MarketGenerationError("Market output delisted too many companies.", raw=raw)

    return MarketHourState(
        hour_key=hour_key,
        source=source,
        companies=companies,
        delisted=delisted,
        news=news,
    )
