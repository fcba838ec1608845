"""
Tests for the nutrition estimator: saved_foods cache, LLM path, fallback
heuristic, and the single-call batch estimate.
"""

import json
import os
from unittest.mock import MagicMock, Mock

import pytest

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test.anon.key")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test.service.key")

from app.services import nutrition_estimator
from app.services.nutrition_estimator import (
    build_batch_prompt,
    estimate,
    estimate_batch,
    fallback_estimate,
)


PHO_ESTIMATE = {
    "calories": 520,
    "protein": 28.4,
    "carbs": 65.0,
    "fat": 14.2,
    "confidence": "medium",
    "reasoning": "Restaurant-sized bowl of beef pho",
}


@pytest.fixture()
def mock_db(mocker):
    """Patch the service-role client; every saved_foods lookup misses by default."""
    db = MagicMock()
    table = db.table.return_value
    table.select.return_value.ilike.return_value.limit.return_value.execute.return_value = Mock(data=[])
    table.select.return_value.or_.return_value.execute.return_value = Mock(data=[])
    table.insert.return_value.execute.return_value = Mock(data=[{"id": "food-1"}])
    mocker.patch.object(nutrition_estimator, "supabase_admin", db)
    return db


@pytest.fixture()
def llm(mocker, monkeypatch):
    """LLM configured; returns the patched llm_client.complete."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-anthropic-key")
    return mocker.patch.object(nutrition_estimator.llm_client, "complete")


@pytest.fixture()
def no_llm(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


class TestFallbackEstimate:
    def test_pho(self):
        est = fallback_estimate("Phở Bò Tái")

        assert est.calories == 450
        assert est.protein == 34
        assert est.carbs == 45
        assert est.fat == 15
        assert est.confidence == "low"
        assert est.source == "fallback"

    def test_default(self):
        est = fallback_estimate("Pizza Hut District 1")

        assert est.calories == 400
        assert est.protein == round(400 * 0.3 / 4)
        assert est.carbs == 40
        assert est.fat == 13

    @pytest.mark.parametrize(
        "food, calories",
        [
            ("Bánh Mì Huỳnh Hoa", 400),
            ("Cơm Tấm Sài Gòn", 550),
            ("Bún Chả Hà Nội", 400),
            ("Highlands Coffee", 150),
        ],
    )
    def test_keywords(self, food, calories):
        assert fallback_estimate(food).calories == calories


class TestEstimate:
    def test_saved_food_wins(self, mock_db, llm):
        row = {"name": "Phở Hòa", "calories": 480, "protein": 30, "carbs": 60, "fat": 12}
        mock_db.table.return_value.select.return_value.ilike.return_value.limit.return_value.execute.return_value = Mock(data=[row])

        est = estimate("Phở Hòa")

        assert est.calories == 480
        assert est.source == "saved"
        assert est.confidence == "high"
        llm.assert_not_called()

    def test_llm_estimate_is_saved(self, mock_db, llm):
        llm.return_value = json.dumps(PHO_ESTIMATE)

        est = estimate("Phở Hòa", hints="Food orders from delivery/restaurant transactions")

        assert est.calories == 520
        assert est.protein == 28.4
        assert est.source == "llm"
        assert est.confidence == "medium"
        prompt = llm.call_args[0][0]
        assert "Phở Hòa" in prompt
        assert "Additional context: Food orders" in prompt

        inserted = mock_db.table.return_value.insert.call_args[0][0]
        assert inserted["name"] == "Phở Hòa"
        assert inserted["calories"] == 520
        assert inserted["source"] == "llm"

    def test_duplicate_save_is_ignored(self, mock_db, llm):
        llm.return_value = json.dumps(PHO_ESTIMATE)
        error = Exception("duplicate key value violates unique constraint")
        error.code = "23505"
        mock_db.table.return_value.insert.return_value.execute.side_effect = error

        est = estimate("Phở Hòa")

        assert est.source == "llm"

    def test_llm_failure_falls_back(self, mock_db, llm):
        llm.side_effect = Exception("529 overloaded")

        est = estimate("Phở Hòa")

        assert est.source == "fallback"
        assert est.calories == 450
        mock_db.table.return_value.insert.assert_not_called()

    def test_invalid_llm_json_falls_back(self, mock_db, llm):
        llm.return_value = "about 500 calories"

        assert estimate("Phở Hòa").source == "fallback"

    def test_missing_macro_falls_back(self, mock_db, llm):
        llm.return_value = json.dumps({"calories": 500, "confidence": "high"})

        assert estimate("Phở Hòa").source == "fallback"

    def test_not_configured_uses_fallback(self, mock_db, no_llm, mocker):
        complete = mocker.patch.object(nutrition_estimator.llm_client, "complete")

        est = estimate("Bánh Mì")

        assert est.source == "fallback"
        complete.assert_not_called()

    def test_cache_error_does_not_block_estimate(self, mock_db, llm):
        mock_db.table.return_value.select.side_effect = Exception("connection reset")
        llm.return_value = json.dumps(PHO_ESTIMATE)

        assert estimate("Phở Hòa").source == "llm"


class TestEstimateBatch:
    def test_single_llm_call_in_input_order(self, mock_db, llm):
        foods = ["Phở Hòa", "Pizza Hut", "Highlands Coffee"]
        llm.return_value = json.dumps([
            dict(PHO_ESTIMATE, calories=500),
            dict(PHO_ESTIMATE, calories=900),
            dict(PHO_ESTIMATE, calories=120),
        ])

        estimates = estimate_batch(foods)

        assert [e.calories for e in estimates] == [500, 900, 120]
        assert llm.call_count == 1
        prompt = llm.call_args[0][0]
        assert '1. "Phở Hòa"' in prompt
        assert '3. "Highlands Coffee"' in prompt

    def test_saved_foods_skip_the_llm(self, mock_db, llm):
        mock_db.table.return_value.select.return_value.or_.return_value.execute.return_value = Mock(
            data=[{"name": "pizza hut", "calories": 800, "protein": 30, "carbs": 90, "fat": 35}]
        )
        llm.return_value = json.dumps([dict(PHO_ESTIMATE, calories=500)])

        estimates = estimate_batch(["Phở Hòa", "Pizza Hut"])

        assert [e.source for e in estimates] == ["llm", "saved"]
        assert estimates[1].calories == 800
        assert '1. "Phở Hòa"' in llm.call_args[0][0]
        assert "Pizza Hut" not in llm.call_args[0][0]

    def test_all_saved_makes_no_llm_call(self, mock_db, llm):
        mock_db.table.return_value.select.return_value.or_.return_value.execute.return_value = Mock(
            data=[{"name": "Phở Hòa", "calories": 480, "protein": 30, "carbs": 60, "fat": 12}]
        )

        estimates = estimate_batch(["Phở Hòa"])

        assert estimates[0].source == "saved"
        llm.assert_not_called()

    def test_saved_food_lookup_ignores_case(self, mock_db, llm):
        lookup = mock_db.table.return_value.select.return_value.or_
        lookup.return_value.execute.return_value = Mock(
            data=[{"name": "PIZZA HUT", "calories": 800, "protein": 30, "carbs": 90, "fat": 35}]
        )

        estimates = estimate_batch(["Pizza Hut", "Pizza Hut"])

        assert [e.source for e in estimates] == ["saved", "saved"]
        llm.assert_not_called()
        lookup.assert_called_once_with('name.ilike."Pizza Hut"')

    def test_saved_food_lookup_matches_names_literally(self, mock_db, llm):
        lookup = mock_db.table.return_value.select.return_value.or_
        llm.return_value = json.dumps([PHO_ESTIMATE, PHO_ESTIMATE])

        estimate_batch(["Bún_Chả 100%", 'Quán "Ngon"'])

        terms = lookup.call_args[0][0]
        assert terms == 'name.ilike."Bún\\\\_Chả 100\\\\%",name.ilike."Quán \\"Ngon\\""'

    def test_length_mismatch_falls_back_for_all(self, mock_db, llm):
        llm.return_value = json.dumps([PHO_ESTIMATE])

        estimates = estimate_batch(["Phở Hòa", "Bánh Mì"])

        assert [e.source for e in estimates] == ["fallback", "fallback"]
        assert [e.calories for e in estimates] == [450, 400]

    def test_invalid_item_falls_back_individually(self, mock_db, llm):
        llm.return_value = json.dumps([PHO_ESTIMATE, {"calories": "lots"}])

        estimates = estimate_batch(["Phở Hòa", "Cơm Tấm"])

        assert estimates[0].source == "llm"
        assert estimates[1].source == "fallback"
        assert estimates[1].calories == 550

    def test_empty_input(self, mock_db, llm):
        assert estimate_batch([]) == []
        llm.assert_not_called()

    def test_not_configured(self, mock_db, no_llm):
        estimates = estimate_batch(["Phở Hòa", "Bánh Mì"])
        assert [e.source for e in estimates] == ["fallback", "fallback"]


class TestBuildBatchPrompt:
    def test_requests_array_of_exact_length(self):
        prompt = build_batch_prompt(["a", "b"], hints="delivery")
        assert "JSON array of exactly 2 objects" in prompt
        assert "Additional context: delivery" in prompt
