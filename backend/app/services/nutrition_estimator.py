"""
Calorie and macro estimation for food descriptions.

Lookup order for each food:
  1. saved_foods table (personal cache, confidence "high", source "saved")
  2. Anthropic estimate (source "llm"), written back to saved_foods
  3. Keyword heuristic (confidence "low", source "fallback"), never cached

estimate_batch() issues one saved_foods query and at most one LLM call for
the whole batch, and returns estimates in input order.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from app.db import supabase_admin
from app.models.transaction import NutritionEstimate
from app.services import llm_client

logger = logging.getLogger(__name__)

DUPLICATE_KEY_CODE = "23505"

# (keywords, calories); first match wins
_FALLBACK_CALORIES: list[tuple[tuple[str, ...], int]] = [
    (("phở", "pho"), 450),
    (("bánh mì", "banh mi"), 400),
    (("cơm", "rice"), 550),
    (("bún", "noodle"), 400),
    (("cà phê", "coffee"), 150),
]
_DEFAULT_CALORIES = 400

_CONTEXT = """\
Context for estimation:
- This is for a Vietnamese user tracking personal calorie intake
- Use typical Vietnamese portion sizes unless specified otherwise
- If the food name includes a merchant/restaurant, consider their typical portions
- For GrabFood orders, assume restaurant-sized portions
- Be conservative but realistic with estimates

Confidence levels:
- "high": Common food with well-known nutrition (rice, chicken, eggs, etc.)
- "medium": Restaurant food or prepared dishes (phở, bánh mì, etc.)
- "low": Ambiguous description or highly variable food (salad, stir-fry, etc.)
"""

_ESTIMATE_FIELDS = """\
  "calories": <integer>,
  "protein": <number with 1 decimal>,
  "carbs": <number with 1 decimal>,
  "fat": <number with 1 decimal>,
  "confidence": "<high|medium|low>",
  "reasoning": "<brief explanation of your estimate>\""""


def _hint_lines(hints: Optional[str]) -> str:
    return f"\nAdditional context: {hints}" if hints else ""


def build_single_prompt(food: str, hints: Optional[str] = None) -> str:
    return (
        "Estimate the nutritional information for this food item:\n\n"
        f'Food: "{food}"{_hint_lines(hints)}\n\n'
        f"{_CONTEXT}\n"
        "Provide your response in this EXACT JSON format (no markdown, no code blocks):\n"
        "{\n" + _ESTIMATE_FIELDS + "\n}"
    )


def build_batch_prompt(foods: list[str], hints: Optional[str] = None) -> str:
    numbered = "\n".join(f'{i}. "{food}"' for i, food in enumerate(foods, start=1))
    return (
        "Estimate the nutritional information for each of these food items:\n\n"
        f"{numbered}{_hint_lines(hints)}\n\n"
        f"{_CONTEXT}\n"
        f"Respond with ONLY a JSON array of exactly {len(foods)} objects, in the same "
        "order as the items above (no markdown, no code blocks). Each object:\n"
        "{\n" + _ESTIMATE_FIELDS + "\n}"
    )


def fallback_estimate(food: str) -> NutritionEstimate:
    """Keyword heuristic used when no LLM estimate is available."""
    lower = (food or "").lower()
    calories = _DEFAULT_CALORIES
    for keywords, value in _FALLBACK_CALORIES:
        if any(k in lower for k in keywords):
            calories = value
            break

    # 30% protein, 40% carbs, 30% fat by energy
    return NutritionEstimate(
        calories=calories,
        protein=round(calories * 0.3 / 4),
        carbs=round(calories * 0.4 / 4),
        fat=round(calories * 0.3 / 9),
        confidence="low",
        source="fallback",
        reasoning="Fallback estimate (LLM unavailable). Please verify and update.",
    )


def _from_llm_item(item: Any) -> NutritionEstimate:
    """Validate one estimate object from model output. Raises ValueError."""
    if not isinstance(item, dict):
        raise ValueError(f"Estimate is not an object: {item!r}")
    for key in ("calories", "protein", "carbs", "fat"):
        if not isinstance(item.get(key), (int, float)) or isinstance(item.get(key), bool):
            raise ValueError(f"Estimate field {key!r} missing or not numeric")

    confidence = item.get("confidence")
    if confidence not in ("high", "medium", "low"):
        confidence = "medium"

    return NutritionEstimate(
        calories=round(item["calories"]),
        protein=round(float(item["protein"]), 1),
        carbs=round(float(item["carbs"]), 1),
        fat=round(float(item["fat"]), 1),
        confidence=confidence,
        source="llm",
        reasoning=str(item.get("reasoning") or "LLM estimate"),
    )


def _from_saved_row(row: dict) -> NutritionEstimate:
    return NutritionEstimate(
        calories=row.get("calories") or 0,
        protein=row.get("protein") or 0,
        carbs=row.get("carbs") or 0,
        fat=row.get("fat") or 0,
        confidence="high",
        source="saved",
        reasoning=f'Using saved food entry: "{row.get("name")}"',
    )


# ---------------------------------------------------------------------------
# saved_foods cache
# ---------------------------------------------------------------------------

def _lookup_saved_food(food: str) -> Optional[dict]:
    """Case-insensitive exact match, then substring match. Never raises."""
    try:
        result = (
            supabase_admin.table("saved_foods")
            .select("*")
            .ilike("name", food)
            .limit(1)
            .execute()
        )
        if result.data:
            return result.data[0]

        result = (
            supabase_admin.table("saved_foods")
            .select("*")
            .ilike("name", f"%{food}%")
            .limit(1)
            .execute()
        )
        if result.data:
            return result.data[0]
    except Exception as e:
        logger.warning(f"saved_foods lookup failed for {food!r}: {e}")
    return None


def _exact_ilike(food: str) -> str:
    """PostgREST filter term matching name case-insensitively and literally."""
    pattern = food.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    quoted = pattern.replace("\\", "\\\\").replace('"', '\\"')
    return f'name.ilike."{quoted}"'


def _lookup_saved_foods(foods: list[str]) -> dict[str, dict]:
    """One case-insensitive query for the whole batch; keyed by lower-cased name."""
    try:
        result = (
            supabase_admin.table("saved_foods")
            .select("*")
            .or_(",".join(_exact_ilike(food) for food in dict.fromkeys(foods)))
            .execute()
        )
    except Exception as e:
        logger.warning(f"saved_foods batch lookup failed: {e}")
        return {}
    saved: dict[str, dict] = {}
    for row in result.data or []:
        saved.setdefault(str(row.get("name", "")).lower(), row)
    return saved


def _save_estimate(food: str, estimate: NutritionEstimate) -> None:
    """Cache an LLM estimate. A duplicate-name conflict is not an error."""
    if estimate.source != "llm":
        return
    try:
        supabase_admin.table("saved_foods").insert({
            "name": food,
            "calories": estimate.calories,
            "protein": estimate.protein,
            "carbs": estimate.carbs,
            "fat": estimate.fat,
            "source": estimate.source,
            "use_count": 1,
            "last_used_at": datetime.now(timezone.utc).isoformat(),
            "notes": estimate.reasoning,
        }).execute()
        logger.info(f"Saved nutrition estimate for {food!r}")
    except Exception as e:
        if getattr(e, "code", None) == DUPLICATE_KEY_CODE:
            logger.info(f"Food {food!r} already exists in saved_foods")
        else:
            logger.warning(f"Failed to save nutrition estimate for {food!r}: {e}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def estimate(food: str, hints: Optional[str] = None) -> NutritionEstimate:
    """
    Estimate calories and macros for a single food description.

    Never raises: any LLM failure degrades to the keyword heuristic.
    """
    saved = _lookup_saved_food(food)
    if saved:
        logger.info(f"Found saved food entry for {food!r}")
        return _from_saved_row(saved)

    if not llm_client.llm_configured():
        logger.warning("ANTHROPIC_API_KEY not configured, using fallback estimation")
        return fallback_estimate(food)

    try:
        raw_text = llm_client.complete(build_single_prompt(food, hints))
        result = _from_llm_item(llm_client.parse_json_response(raw_text))
    except Exception as e:
        logger.warning(f"LLM nutrition estimate failed for {food!r}: {e}")
        return fallback_estimate(food)

    _save_estimate(food, result)
    return result


def estimate_batch(
    foods: list[str],
    hints: Optional[str] = None,
) -> list[NutritionEstimate]:
    """
    Estimate several foods with one cache query and one LLM call.

    Returns one estimate per input, in input order.
    """
    if not foods:
        return []

    saved = _lookup_saved_foods(foods)
    results: list[Optional[NutritionEstimate]] = [None] * len(foods)
    missing: list[int] = []
    for i, food in enumerate(foods):
        row = saved.get(food.lower())
        if row:
            results[i] = _from_saved_row(row)
        else:
            missing.append(i)

    if missing:
        llm_estimates = _estimate_missing([foods[i] for i in missing], hints)
        for i, est in zip(missing, llm_estimates):
            results[i] = est
            _save_estimate(foods[i], est)

    return results


def _estimate_missing(foods: list[str], hints: Optional[str]) -> list[NutritionEstimate]:
    if not llm_client.llm_configured():
        logger.warning("ANTHROPIC_API_KEY not configured, using fallback estimation")
        return [fallback_estimate(food) for food in foods]

    try:
        raw_text = llm_client.complete(
            build_batch_prompt(foods, hints),
            max_tokens=min(4000, 200 * len(foods) + 300),
        )
        data = llm_client.parse_json_response(raw_text)
        if not isinstance(data, list) or len(data) != len(foods):
            raise ValueError(
                f"Expected a JSON array of {len(foods)} estimates, got {type(data).__name__}"
            )
    except Exception as e:
        logger.warning(f"LLM batch nutrition estimate failed: {e}")
        return [fallback_estimate(food) for food in foods]

    estimates = []
    for food, item in zip(foods, data):
        try:
            estimates.append(_from_llm_item(item))
        except ValueError as e:
            logger.warning(f"Invalid estimate for {food!r}: {e}")
            estimates.append(fallback_estimate(food))
    return estimates
