"""
FANTASY EXCHANGE: Pearly Gates (soul judgment mini-game)

The player interviews a freshly deceased soul (five questions max) and stamps
HEAVEN or HELL. The soul's alignment is decided by the server when the profile
is created and never changes; the model only writes the character around it.

Modes:
    daily         one shared soul per UTC date; game id == date key
    debug-random  a fresh soul per start; game id is a uuid4

Profiles live in KV (see config.keys.profile_key_for). The client keeps the Q&A
transcript and sends it back with every ask/judge call.
"""

import hashlib
import json
import logging
import random
import re
import uuid
from typing import Literal, Optional

import openai
from pydantic import Field, ValidationError, field_validator

from config.keys import profile_key_for, profile_lock_key_for
from config.settings import GameConfig
from config.storage import (
    kv_delete, kv_get_json, kv_get_raw, kv_set_json, kv_try_acquire_lock, kv_wait_for_json,
)
from tools.hour_key import is_date_key, utc_date_key
from tools.images import generate_portrait
from tools.llm_client import LLMError, chat_completion, extract_json, parse_json_object
from tools.market_models import WireModel

logger = logging.getLogger("fantasyx.pearly")

GameMode = Literal["daily", "debug-random"]
Alignment = Literal["GOOD", "EVIL"]

GOD_FALLBACK_MESSAGE = (
    "VERDICT: INCONCLUSIVE.\n"
    "MORTAL, THE HEAVENS ARE EXPERIENCING TECHNICAL DIFFICULTIES.\n"
    "TRY AGAIN."
)


# ═══════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════

class GameInputError(ValueError):
    """Bad request from the client (missing fields, too many questions...)."""


class GameNotFoundError(LookupError):
    pass


class GameGenerationError(RuntimeError):
    """Model output unusable. `raw` keeps it for debugging."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class ProfileGenerationError(GameGenerationError):
    pass


class ProfileBusyError(RuntimeError):
    pass


# ═══════════════════════════════════════════════
# Models
# ═══════════════════════════════════════════════

class VisibleProfile(WireModel):
    case_number: int
    name: str
    age: int
    occupation: str
    cause_of_death: str
    portrait_url: Optional[str] = None


class HiddenProfile(WireModel):
    bio: str
    best_acts: list[str]
    worst_acts: list[str]

    @field_validator("best_acts", "worst_acts")
    @classmethod
    def three_acts(cls, v: list[str]) -> list[str]:
        acts = [str(a).strip() for a in v if str(a).strip()]
        if len(acts) < 3:
            raise ValueError("need three acts")
        return acts[:3]


class CharacterProfile(WireModel):
    version: int = 1
    date_key: Optional[str] = None
    game_id: str
    mode: GameMode
    alignment: Alignment
    visible: VisibleProfile
    hidden: HiddenProfile


class QAItem(WireModel):
    q: str
    a: str = ""
    from_: Optional[Literal["SOUL", "GOD"]] = Field(default=None, alias="from")


def parse_qa(items) -> list[QAItem]:
    """Client transcript, malformed entries skipped."""
    out = []
    for item in items if isinstance(items, list) else []:
        try:
            out.append(QAItem.model_validate(item))
        except ValidationError:
            continue
    return out


def soul_questions(qa: list[QAItem]) -> list[QAItem]:
    return [item for item in qa if (item.from_ or "SOUL") == "SOUL"]


# ═══════════════════════════════════════════════
# Deterministic bits
# ═══════════════════════════════════════════════

def _digest_int(text: str) -> int:
    return int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:12], 16)


def case_number_for(game_id: str) -> int:
    """Stable 4-digit case number (1000..9999) for a game id."""
    return 1000 + _digest_int(f"case:{game_id}") % 9000


def daily_alignment(date_key: str) -> Alignment:
    return "GOOD" if _digest_int(f"alignment:{date_key}") % 2 == 0 else "EVIL"


def choose_alignment(mode: str, date_key: str) -> Alignment:
    if mode == "daily":
        return daily_alignment(date_key)
    return random.choice(("GOOD", "EVIL"))


def normalize_mode(mode) -> GameMode:
    return "debug-random" if mode == "debug-random" else "daily"


# ═══════════════════════════════════════════════
# Obvious-question guard
# ═══════════════════════════════════════════════

_OBVIOUS_PATTERNS = [
    r"\b(are|were) you (a )?(good|bad|evil|wicked|righteous|sinner|saint)\b",
    r"\b(are|were) you (a )?(good|bad|evil) (person|man|woman|soul|human)\b",
    r"\bheaven or hell\b",
    r"\bhell or heaven\b",
    r"\bgood or (bad|evil)\b",
    r"\b(evil|bad) or good\b",
    r"\b(should|do) (i|we) (send|put|let) you (to|in|into) (heaven|hell)\b",
    r"\b(do|did) you deserve (heaven|hell)\b",
    r"\bwhere (should|do) you (go|belong)\b",
    r"\bwhat is your alignment\b",
    r"\bwhat'?s your alignment\b",
    r"\bare you going to (heaven|hell)\b",
]
_OBVIOUS_RE = [re.compile(p) for p in _OBVIOUS_PATTERNS]


def is_obvious_alignment_question(question: str) -> bool:
    """True for questions that just ask the soul to name its own verdict."""
    text = re.sub(r"[^a-z' ]+", " ", (question or "").lower())
    text = re.sub(r"\s+", " ", text).strip()
    return any(p.search(text) for p in _OBVIOUS_RE)


def god_obvious_question_warning() -> str:
    return (
        "THOU SHALT NOT SIMPLY ASK THE SOUL WHERE IT BELONGS, MORTAL.\n"
        "EVERY SOUL AT THESE GATES CLAIMS TO BE A SAINT.\n"
        "ASK ABOUT DEEDS. I DID NOT COUNT THAT ONE."
    )


# ═══════════════════════════════════════════════
# Profile storage
# ═══════════════════════════════════════════════

def _profile_ttl(mode: str) -> int:
    return GameConfig.DAILY_PROFILE_TTL_SECONDS if mode == "daily" else GameConfig.RANDOM_PROFILE_TTL_SECONDS


def _resolve_ids(mode: str, date_key: str, game_id: str) -> tuple[str, str]:
    date_key = (date_key or "").strip()
    game_id = (game_id or "").strip()
    if mode == "daily":
        if not date_key:
            raise GameInputError("Missing dateKey for daily mode")
        if not is_date_key(date_key):
            raise GameInputError("dateKey must be YYYY-MM-DD")
        return date_key, game_id or date_key
    if not game_id:
        raise GameInputError("Missing gameId")
    return date_key, game_id


def _migrate(record: dict, game_id: str) -> bool:
    """Upgrade an older stored profile in place. Returns True if it changed."""
    changed = False
    if "faceEmoji" in record:
        record.pop("faceEmoji", None)
        changed = True
    visible = record.get("visible")
    if isinstance(visible, dict):
        cn = visible.get("caseNumber")
        if isinstance(cn, bool) or not isinstance(cn, int) or not 1000 <= cn <= 9999:
            visible["caseNumber"] = case_number_for(record.get("gameId") or game_id)
            changed = True
    return changed


def load_profile(mode: str, game_id: str, date_key: str = "") -> Optional[CharacterProfile]:
    """Stored profile (migrated and re-saved if needed), or None."""
    key = profile_key_for(mode, game_id, date_key)
    record = kv_get_json(key)
    if not isinstance(record, dict):
        return None
    if _migrate(record, game_id):
        logger.info(f"Migrated stored profile {key}")
        kv_set_json(key, record, ex_seconds=_profile_ttl(mode))
    try:
        return CharacterProfile.model_validate(record)
    except ValidationError as e:
        logger.warning(f"Unreadable profile at {key}: {e.error_count()} errors")
        return None


def _require_profile(mode: str, game_id: str, date_key: str) -> CharacterProfile:
    profile = load_profile(mode, game_id, date_key)
    if profile is None:
        raise GameNotFoundError("Game not found")
    return profile


# ═══════════════════════════════════════════════
# LLM calls
# ═══════════════════════════════════════════════

def _complete(prompt: str, call_key: str, error_cls=GameGenerationError) -> str:
    try:
        result = chat_completion(prompt, call_key)
    except LLMError as e:
        raise error_cls(str(e), raw=e.raw)
    except openai.OpenAIError as e:
        raise error_cls(f"LLM call failed: {e}")
    if not result.text:
        raise error_cls(f"LLM returned empty content. Hint: {result.hint}".strip())
    return result.text


def build_profile_prompt(alignment: str, date_key: str) -> str:
    return f"""You write characters for a mobile game called "PEARLY GATES".
A freshly deceased human soul waits at the gates. The player may ask five questions
before stamping HEAVEN or HELL.

THIS SOUL'S TRUE ALIGNMENT: {alignment}
Make the alignment discoverable through good questions, never obvious from the card.
Mix sympathetic and unsympathetic details. Keep it funny and specific.
Seed date (for variety): {date_key}

Respond ONLY with strict JSON:
{{
  "name": "string",
  "age": number,
  "occupation": "string",
  "causeOfDeath": "string (short, absurd is fine)",
  "bio": "string (2-3 sentences)",
  "bestActs": ["string", "string", "string"],
  "worstActs": ["string", "string", "string"]
}}"""


def parse_profile_response(raw: str, *, mode: str, game_id: str, date_key: str,
                           alignment: str) -> CharacterProfile:
    try:
        obj = parse_json_object(raw)
    except LLMError as e:
        raise ProfileGenerationError(f"Profile {e}", raw=raw)
    try:
        age = int(float(obj.get("age")))
    except (TypeError, ValueError):
        raise ProfileGenerationError("Profile age was not a number.", raw=raw)
    try:
        return CharacterProfile(
            date_key=date_key or None,
            game_id=game_id,
            mode=mode,
            alignment=alignment,
            visible=VisibleProfile(
                case_number=case_number_for(game_id),
                name=str(obj.get("name") or "").strip() or "Unnamed Soul",
                age=max(1, min(age, 120)),
                occupation=str(obj.get("occupation") or "").strip() or "Unknown",
                cause_of_death=str(obj.get("causeOfDeath") or "").strip() or "Unknown",
            ),
            hidden=HiddenProfile(
                bio=str(obj.get("bio") or "").strip(),
                best_acts=obj.get("bestActs") if isinstance(obj.get("bestActs"), list) else [],
                worst_acts=obj.get("worstActs") if isinstance(obj.get("worstActs"), list) else [],
            ),
        )
    except ValidationError as e:
        raise ProfileGenerationError(f"Profile output invalid: {e.error_count()} errors", raw=raw)


def create_profile(mode: str, game_id: str, date_key: str) -> CharacterProfile:
    alignment = choose_alignment(mode, date_key)
    raw = _complete(build_profile_prompt(alignment, date_key), "profile", ProfileGenerationError)
    profile = parse_profile_response(raw, mode=mode, game_id=game_id, date_key=date_key,
                                     alignment=alignment)
    v = profile.visible
    profile.visible.portrait_url = generate_portrait(v.name, v.age, v.occupation, v.cause_of_death)
    return profile


def _store_profile(profile: CharacterProfile) -> CharacterProfile:
    key = profile_key_for(profile.mode, profile.game_id, profile.date_key or "")
    raw = kv_set_json(key, profile.to_wire(), ex_seconds=_profile_ttl(profile.mode))
    return CharacterProfile.model_validate_json(raw)


# ═══════════════════════════════════════════════
# Game flow
# ═══════════════════════════════════════════════

def _get_or_create_daily(date_key: str) -> CharacterProfile:
    existing = load_profile("daily", date_key, date_key)
    if existing is not None:
        return existing

    lock_key = profile_lock_key_for("daily", date_key, date_key)
    token = kv_try_acquire_lock(lock_key, GameConfig.PROFILE_LOCK_TTL_SECONDS)
    if token is None:
        kv_wait_for_json(profile_key_for("daily", date_key, date_key),
                         timeout=GameConfig.PROFILE_LOCK_WAIT_SECONDS)
        existing = load_profile("daily", date_key, date_key)
        if existing is not None:
            return existing
        raise ProfileBusyError("Today's soul is still arriving. Try again.")

    try:
        existing = load_profile("daily", date_key, date_key)
        if existing is not None:
            return existing
        logger.info(f"Creating daily soul for {date_key}")
        return _store_profile(create_profile("daily", date_key, date_key))
    except Exception:
        if kv_get_raw(lock_key) == token:
            kv_delete(lock_key)
        raise


def start_game(mode, date_key: str = "") -> dict:
    mode = normalize_mode(mode)
    if mode == "daily":
        date_key, _ = _resolve_ids(mode, date_key, "")
        profile = _get_or_create_daily(date_key)
    else:
        date_key = (date_key or "").strip() or utc_date_key()
        profile = _store_profile(create_profile(mode, str(uuid.uuid4()), date_key))
    return {
        "mode": mode,
        "dateKey": date_key,
        "gameId": profile.game_id,
        "visible": profile.visible.to_wire(),
    }


def build_soul_prompt(profile: CharacterProfile, qa: list[QAItem], question: str) -> str:
    v, h = profile.visible, profile.hidden
    history = "\n".join(f"Q: {item.q}\nA: {item.a}" for item in qa) or "(none yet)"
    return f"""You are {v.name}, age {v.age}, a {v.occupation}, who just died ({v.cause_of_death}).
You stand before the pearly gates being questioned. Stay in character.

YOUR LIFE (private; reveal only through answers):
- Bio: {h.bio}
- Best acts: {"; ".join(h.best_acts)}
- Worst acts: {"; ".join(h.worst_acts)}
- True alignment: {profile.alignment}

RULES:
- Answer the question honestly in spirit but with personality; souls spin the truth.
- Never state your alignment or say where you belong.
- 1-3 short sentences.

EARLIER QUESTIONS:
{history}

QUESTION: {question}

Respond ONLY with strict JSON: {{"answer": "string"}}"""


def parse_soul_answer(raw: str) -> str:
    try:
        obj = parse_json_object(raw)
    except LLMError as e:
        raise GameGenerationError("The soul's answer could not be read.", raw=e.raw)
    answer = str(obj.get("answer") or "").strip()
    if not answer:
        raise GameGenerationError("The soul said nothing.", raw=raw)
    return answer


def ask(mode, date_key: str, game_id: str, question: str, qa_so_far=None) -> dict:
    mode = normalize_mode(mode)
    question = (question or "").strip()
    if not question:
        raise GameInputError("Missing question")
    if len(question) > GameConfig.MAX_QUESTION_CHARS:
        raise GameInputError(f"Question must be {GameConfig.MAX_QUESTION_CHARS} characters or fewer.")
    qa = soul_questions(parse_qa(qa_so_far))
    if len(qa) >= GameConfig.MAX_QUESTIONS:
        raise GameInputError(f"No questions left. You get {GameConfig.MAX_QUESTIONS}.")

    date_key, game_id = _resolve_ids(mode, date_key, game_id)
    profile = _require_profile(mode, game_id, date_key)

    if is_obvious_alignment_question(question):
        logger.info(f"Blocked obvious question for {profile.game_id}")
        return {"blocked": True, "godMessage": god_obvious_question_warning()}

    raw = _complete(build_soul_prompt(profile, qa, question), "soul")
    return {"answer": parse_soul_answer(raw)}


def build_god_prompt(profile: CharacterProfile, qa: list[QAItem], player_judgment: str,
                     correct_judgment: str) -> str:
    v, h = profile.visible, profile.hidden
    transcript = "\n".join(
        f"Q{i + 1}: {item.q}\nA{i + 1}: {item.a}" for i, item in enumerate(qa[:GameConfig.MAX_QUESTIONS])
    ) or "(THE PLAYER ASKED NO QUESTIONS.)"
    best = "\n".join(f"  {i + 1}) {act}" for i, act in enumerate(h.best_acts))
    worst = "\n".join(f"  {i + 1}) {act}" for i, act in enumerate(h.worst_acts))
    return f"""YOU ARE GOD. OLD TESTAMENT THUNDER. ALL CAPS ALWAYS.
YOU ARE DELIVERING THE FINAL VERDICT FOR A GAME CALLED "PEARLY GATES".

FACTS (DO NOT CONTRADICT):
- THE PLAYER STAMPED: {player_judgment}
- THE CORRECT STAMP WAS: {correct_judgment}
- THE SOUL'S TRUE ALIGNMENT: {profile.alignment}

CHARACTER CARD (PLAYER SAW THIS):
- NAME: {v.name}
- AGE: {v.age}
- OCCUPATION: {v.occupation}
- CAUSE OF DEATH: {v.cause_of_death}

HIDDEN TRUTH (FOR YOU ONLY):
- BIO: {h.bio}
- 3 BEST ACTS:
{best}
- 3 WORST ACTS:
{worst}

PLAYER TRANSCRIPT:
{transcript}

WRITE A SHORT, FUNNY, THUNDEROUS GAME-OVER MESSAGE (4-8 LINES).
STATE CLEARLY WHETHER THE PLAYER WAS CORRECT. IF WRONG, REVEAL WHAT THEY MISSED.
ONLY CLAIM THE PLAYER KNEW THINGS THAT APPEAR IN THE TRANSCRIPT OR THE CARD;
FRAME ANY HIDDEN FACT AS GOD REVEALING IT NOW.

RESPOND ONLY WITH STRICT JSON: {{"godMessage": "string"}}"""


_GOD_MESSAGE_RE = re.compile(r'"godMessage"\s*:\s*"([\s\S]*?)"', re.IGNORECASE)


def parse_god_response(raw: str) -> str:
    """godMessage from JSON, else a regex scrape, else the canned verdict."""
    text = extract_json(raw)
    if text:
        try:
            obj = json.loads(text)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict) and isinstance(obj.get("godMessage"), str) and obj["godMessage"].strip():
            return obj["godMessage"].strip()

    m = _GOD_MESSAGE_RE.search(raw or "")
    if m and m.group(1).strip():
        return m.group(1).replace("\\n", "\n").strip()
    return GOD_FALLBACK_MESSAGE


def judge(mode, date_key: str, game_id: str, judgment: str, qa=None) -> dict:
    mode = normalize_mode(mode)
    judgment = (judgment or "").strip().upper()
    if judgment not in ("HEAVEN", "HELL"):
        raise GameInputError("Missing judgment")
    date_key, game_id = _resolve_ids(mode, date_key, game_id)
    profile = _require_profile(mode, game_id, date_key)

    correct_judgment = "HEAVEN" if profile.alignment == "GOOD" else "HELL"
    correct = judgment == correct_judgment

    transcript = soul_questions(parse_qa(qa))
    raw = _complete(build_god_prompt(profile, transcript, judgment, correct_judgment), "god")
    logger.info(f"Judged {profile.game_id}: {judgment} ({'correct' if correct else 'wrong'})")
    return {"correct": correct, "godMessage": parse_god_response(raw)}
