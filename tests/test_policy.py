"""
Tests for the epsilon-greedy policy.
"""
import math
import random
from decimal import Decimal

import numpy as np
import pytest

from thermo_bandit.learning import LearningConfig, LearningStateStore, PolicyEngine
from thermo_bandit.types import ACTIONS, ContextKey, EfficiencyContext, TemperatureAction

CTX = ContextKey("hot", "warm_indoor", "medium")


@pytest.fixture
def policy(store):
    return PolicyEngine(store, rng=random.Random(42))


class TestSelectAction:

    def test_greedy_picks_max(self, policy):
        q = [0.1, 0.2, 0.9, 0.3, 0.4]
        assert policy.select_action(q, epsilon=0.0) == TemperatureAction.MAINTAIN

    def test_ties_break_to_first_declared(self, policy):
        assert policy.select_action([0.5] * 5, epsilon=0.0) == TemperatureAction.DECREASE_2
        assert policy.select_action([0.1, 0.7, 0.2, 0.7, 0.7], epsilon=0.0) == TemperatureAction.DECREASE_1

    def test_full_exploration_covers_all_actions(self, policy):
        q = [0.0, 0.0, 1.0, 0.0, 0.0]
        chosen = {policy.select_action(q, epsilon=1.0) for _ in range(300)}
        assert chosen == set(ACTIONS)

    def test_seeded_rng_is_deterministic(self, store):
        a = PolicyEngine(store, rng=random.Random(3))
        b = PolicyEngine(store, rng=random.Random(3))
        q = [0.5] * 5
        assert [a.select_action(q, 0.5) for _ in range(50)] == [b.select_action(q, 0.5) for _ in range(50)]

    def test_config_seed_used_without_rng(self):
        store = LearningStateStore(LearningConfig(prng_seed=11))
        a, b = PolicyEngine(store), PolicyEngine(store)
        q = [0.5] * 5
        assert [a.select_action(q, 0.5) for _ in range(20)] == [b.select_action(q, 0.5) for _ in range(20)]


class TestConfidence:

    def test_unexplored_context_hits_floor(self, policy, store):
        state = store.get_or_create("unit-1")
        assert policy.confidence(state, CTX, TemperatureAction.MAINTAIN) == pytest.approx(0.1)

    def test_grows_with_visits(self, policy, store):
        for _ in range(3):
            store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
        state = store.get("unit-1")
        # 3 visits, success rate 1.0
        assert policy.confidence(state, CTX, TemperatureAction.MAINTAIN) == pytest.approx(0.3 * 1.5)

    def test_capped(self, policy, store):
        for _ in range(20):
            store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
        state = store.get("unit-1")
        assert policy.confidence(state, CTX, TemperatureAction.MAINTAIN) == pytest.approx(0.95)

    def test_low_success_rate_reduces(self, policy, store):
        for _ in range(4):
            store.update("unit-1", CTX, TemperatureAction.MAINTAIN, -0.5)
        state = store.get("unit-1")
        # 4 visits, success rate 0.0
        assert policy.confidence(state, CTX, TemperatureAction.MAINTAIN) == pytest.approx(0.2)


class TestEnergySavings:

    def test_zero_without_efficiency_context(self, policy):
        assert policy.estimate_energy_savings(22.0, 24.0, 32.0, None) == 0.0

    def test_proportional_reduction(self, policy):
        # |22-32|=10 -> |24-32|=8: 20% closer to outdoor
        savings = policy.estimate_energy_savings(22.0, 24.0, 32.0, EfficiencyContext())
        assert savings == pytest.approx(20.0)

    def test_capped(self, policy):
        savings = policy.estimate_energy_savings(28.0, 30.0, 32.0, EfficiencyContext())
        assert savings == pytest.approx(30.0)

    def test_no_savings_moving_away(self, policy):
        assert policy.estimate_energy_savings(24.0, 22.0, 32.0, EfficiencyContext()) == 0.0

    def test_no_change(self, policy):
        assert policy.estimate_energy_savings(24.0, 24.0, 32.0, EfficiencyContext()) == 0.0


class TestRecommend:

    def test_recommendation_fields(self, store):
        store.exploration.minimum = 0.0
        store.exploration.set(0.0)
        policy = PolicyEngine(store)

        rec = policy.recommend("unit-1", 32.0, 24.0)

        assert rec.entity_id == "unit-1"
        assert rec.context_key == ContextKey("hot", "warm_indoor", "medium")
        # optimistic ties -> first declared action
        assert rec.action == TemperatureAction.DECREASE_2
        assert rec.recommended_temp == 22.0
        assert rec.current_temp == 24.0
        assert rec.confidence == pytest.approx(0.1)
        assert rec.energy_savings == 0.0
        assert rec.exploration_reason == "exploitation"
        assert not rec.fallback

    def test_prefers_learned_action(self, store):
        store.exploration.minimum = 0.0
        policy = PolicyEngine(store)
        for _ in range(3):
            store.update("unit-1", CTX, TemperatureAction.INCREASE_1, 1.0)
        for action in (TemperatureAction.DECREASE_2, TemperatureAction.DECREASE_1, TemperatureAction.MAINTAIN):
            store.update("unit-1", CTX, action, -1.0)
        store.update("unit-1", CTX, TemperatureAction.INCREASE_2, -1.0)
        store.exploration.set(0.0)

        rec = policy.recommend("unit-1", 32.0, 25.0)

        assert rec.action == TemperatureAction.INCREASE_1
        assert rec.recommended_temp == 26.0

    @pytest.mark.parametrize("target", [10.0, 16.0, 23.0, 30.0, 45.0])
    def test_temperature_always_in_range(self, policy, target):
        for _ in range(30):
            rec = policy.recommend("unit-1", 32.0, target)
            assert 16.0 <= rec.recommended_temp <= 30.0
            assert rec.adjustment in (-2, -1, 0, 1, 2)

    def test_room_category_in_context(self, policy):
        rec = policy.recommend("unit-1", 18.0, 21.0, room_category="large")
        assert rec.context_key.room == "large"

    def test_internal_failure_returns_fallback(self, store):
        class BrokenStore(LearningStateStore):
            def q_values(self, entity_id, context_key):
                raise RuntimeError("boom")

        policy = PolicyEngine(BrokenStore())
        rec = policy.recommend("unit-1", 30.0, 24.0)
        assert rec.fallback
        assert rec.recommended_temp == 26.0


class TestFallback:

    @pytest.mark.parametrize("outdoor,expected", [
        (10.0, 22.0),
        (18.0, 23.0),
        (20.0, 25.0),
        (35.0, 26.0),
    ])
    def test_target_clamped_near_outdoor(self, policy, outdoor, expected):
        rec = policy.fallback("unit-1", 24.0, outdoor)
        assert rec.recommended_temp == expected
        assert rec.confidence == 0.3
        assert rec.energy_savings == 5.0
        assert rec.fallback
        assert rec.context_key is None
        assert rec.exploration_reason == "fallback"

    def test_adjustment_matches_direction(self, policy):
        rec = policy.fallback("unit-1", 24.0, 35.0)
        assert rec.action == TemperatureAction.INCREASE_2

    def test_large_move_keeps_target_and_clamps_action(self, policy):
        rec = policy.fallback("unit-1", 18.0, 30.0)
        assert rec.recommended_temp == 26.0
        assert rec.recommended_temp - rec.current_temp == 8.0
        assert rec.action == TemperatureAction.INCREASE_2

    def test_numpy_and_decimal_inputs(self, policy):
        rec = policy.fallback("unit-1", np.float32(24.0), Decimal("18"))
        assert rec.recommended_temp == 23.0
        assert type(rec.current_temp) is float
        assert rec.action == TemperatureAction.DECREASE_1

    @pytest.mark.parametrize("current,outdoor", [
        (math.nan, 30.0),
        (24.0, math.inf),
        ("warm", None),
    ])
    def test_non_finite_inputs(self, policy, current, outdoor):
        rec = policy.fallback("unit-1", current, outdoor)
        assert 22.0 <= rec.recommended_temp <= 26.0
        assert math.isfinite(rec.current_temp)
        assert rec.adjustment in (-2, -1, 0, 1, 2)
