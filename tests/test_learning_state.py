"""
Tests for learning state and its store.

Validates that learning:
- Follows the Q-value update rule from the optimistic default
- Decays exploration geometrically down to the floor
- Keeps bias and history bounded
- Survives a serialize/deserialize cycle through the persisted schema
"""
import threading

import numpy as np
import pytest

from thermo_bandit.learning import (
    ExplorationRate,
    LearningConfig,
    LearningState,
    LearningStateStore,
)
from thermo_bandit.types import ACTIONS, ContextKey, TemperatureAction

CTX = ContextKey("hot", "comfortable", "medium")
OTHER_CTX = ContextKey("mild", "cold", "small")


class TestLearningState:

    def test_rows_start_optimistic(self):
        state = LearningState(optimistic_q=0.5)
        row = state.q_row(CTX)
        assert row.shape == (len(ACTIONS),)
        assert np.all(row == 0.5)
        assert CTX in state.q_table

    def test_visit_count_defaults_to_zero(self):
        state = LearningState()
        assert state.visit_count(CTX, TemperatureAction.MAINTAIN) == 0

    def test_success_rate_neutral_prior(self):
        state = LearningState()
        assert state.success_rate == 0.5
        state.total_recommendations = 4
        state.successful_recommendations = 1
        assert state.success_rate == 0.25

    def test_serialization_round_trip(self):
        store = LearningStateStore()
        store.update("unit-1", CTX, TemperatureAction.INCREASE_1, 0.5)
        store.update("unit-1", OTHER_CTX, TemperatureAction.DECREASE_2, -0.5)
        original = store.get("unit-1")

        restored = LearningState.from_dict(original.to_dict())

        assert set(restored.q_table) == {CTX, OTHER_CTX}
        np.testing.assert_allclose(restored.q_table[CTX], original.q_table[CTX])
        assert restored.visit_count(OTHER_CTX, TemperatureAction.DECREASE_2) == 1
        assert restored.total_recommendations == 2
        assert restored.successful_recommendations == 1
        assert restored.personalized_bias == pytest.approx(original.personalized_bias)
        assert len(restored.adaptation_history) == 2

    def test_persisted_schema_uses_labels(self):
        store = LearningStateStore()
        store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
        data = store.get("unit-1").to_dict()
        assert set(data["q_table"]["hot|comfortable|medium"]) == {a.label for a in ACTIONS}
        assert data["visit_counts"]["hot|comfortable|medium"]["maintain"] == 1

    def test_malformed_rows_skipped(self):
        data = {
            "q_table": {
                "broken-key": {"maintain": 0.9},
                "hot|comfortable|medium": {"maintain": 0.7, "teleport": 1.0},
            },
            "total_recommendations": 3,
            "successful_recommendations": 9,
        }
        state = LearningState.from_dict(data)
        assert list(state.q_table) == [CTX]
        assert state.q_table[CTX][TemperatureAction.MAINTAIN.index] == pytest.approx(0.7)
        assert state.q_table[CTX][TemperatureAction.INCREASE_2.index] == pytest.approx(0.5)
        # successes never exceed totals
        assert state.successful_recommendations == 3


class TestExplorationRate:

    def test_decay_sequence(self):
        rate = ExplorationRate(initial=0.1, decay=0.995, minimum=0.01)
        for n in range(1, 50):
            rate.decay()
            assert rate.value == pytest.approx(max(0.01, 0.1 * 0.995 ** n))

    def test_floor(self):
        rate = ExplorationRate(initial=0.1, decay=0.5, minimum=0.01)
        for _ in range(20):
            rate.decay()
        assert rate.value == 0.01

    def test_set_clamps_and_reset_restores(self):
        rate = ExplorationRate(initial=0.1, decay=0.995, minimum=0.01)
        rate.set(0.0001)
        assert rate.value == 0.01
        rate.set(3.0)
        assert rate.value == 1.0
        rate.reset()
        assert rate.value == 0.1


class TestLearningStateStore:

    @pytest.mark.parametrize("reward", [-1.0, -0.5, 0.0, 0.5, 1.0])
    def test_first_update_rule(self, store, reward):
        new_q = store.update("unit-1", CTX, TemperatureAction.DECREASE_1, reward)
        assert new_q == pytest.approx(0.5 + 0.1 * (reward - 0.5))
        assert store.q_values("unit-1", CTX)[TemperatureAction.DECREASE_1.index] == pytest.approx(new_q)

    def test_update_only_touches_one_slot(self, store):
        store.update("unit-1", CTX, TemperatureAction.INCREASE_2, 1.0)
        row = store.q_values("unit-1", CTX)
        others = [row[a.index] for a in ACTIONS if a is not TemperatureAction.INCREASE_2]
        assert others == [0.5] * 4

    def test_q_values_returns_copy(self, store):
        row = store.q_values("unit-1", CTX)
        row[:] = 99.0
        assert np.all(store.q_values("unit-1", CTX) == 0.5)

    def test_reward_is_clamped(self, store):
        new_q = store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 7.0)
        assert new_q == pytest.approx(0.5 + 0.1 * (1.0 - 0.5))

    def test_epsilon_decays_per_update(self, store):
        for n in range(1, 30):
            store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
            assert store.exploration.value == pytest.approx(max(0.01, 0.1 * 0.995 ** n))

    def test_counters_and_success(self, store):
        store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
        store.update("unit-1", CTX, TemperatureAction.MAINTAIN, -0.5)
        state = store.get("unit-1")
        assert state.total_recommendations == 2
        assert state.successful_recommendations == 1
        assert state.visit_count(CTX, TemperatureAction.MAINTAIN) == 2

    def test_bias_moves_and_is_bounded(self, store):
        store.update("unit-1", CTX, TemperatureAction.INCREASE_2, 0.5)
        assert store.get("unit-1").personalized_bias == pytest.approx(0.2)
        store.update("unit-1", CTX, TemperatureAction.INCREASE_2, -0.5)
        assert store.get("unit-1").personalized_bias == pytest.approx(0.1)

        for _ in range(100):
            store.update("unit-1", CTX, TemperatureAction.INCREASE_2, 1.0)
        assert store.get("unit-1").personalized_bias == pytest.approx(2.0)

    def test_history_is_bounded(self):
        store = LearningStateStore(LearningConfig(history_limit=5))
        for _ in range(12):
            store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
        assert len(store.get("unit-1").adaptation_history) == 5

    def test_q_values_stay_in_sanity_bound(self, store):
        rewards = [1.0, -1.0, 0.5, -0.5]
        for i in range(400):
            store.update("unit-1", CTX, ACTIONS[i % 5], rewards[i % 4])
        assert np.all(np.abs(store.q_values("unit-1", CTX)) <= 2.0)

    def test_entities_are_independent(self, store):
        store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 1.0)
        assert np.all(store.q_values("unit-2", CTX) == 0.5)
        assert store.get("unit-2").total_recommendations == 0

    def test_reset_single_entity_keeps_epsilon(self, store):
        store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
        store.update("unit-2", CTX, TemperatureAction.MAINTAIN, 0.5)
        epsilon = store.exploration.value

        store.reset("unit-1")

        assert "unit-1" not in store
        assert "unit-2" in store
        assert store.exploration.value == epsilon

    def test_reset_is_idempotent(self, store):
        store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
        store.reset("unit-1")
        store.reset("unit-1")
        assert "unit-1" not in store
        assert len(store) == 0

    def test_full_reset_restores_epsilon(self, store):
        store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)
        store.reset()
        assert len(store) == 0
        assert store.exploration.value == 0.1

    def test_export_import(self, store):
        store.update("unit-1", CTX, TemperatureAction.DECREASE_1, -0.5)
        exported = store.export_entities()

        other = LearningStateStore()
        assert other.import_entities(exported) == 1
        np.testing.assert_allclose(
            other.q_values("unit-1", CTX), store.q_values("unit-1", CTX)
        )

    def test_import_skips_bad_payload(self, store):
        loaded = store.import_entities({
            "good": {"total_recommendations": 1, "successful_recommendations": 1},
            "bad": {"adaptation_history": [{"timestamp": 1.0}]},
        })
        assert loaded == 1
        assert "good" in store and "bad" not in store

    @pytest.mark.parametrize("bad", [
        {"adaptation_history": ["not-a-dict"]},
        {"q_table": {CTX.to_string(): ["not", "a", "mapping"]}},
        "not-a-dict",
    ])
    def test_import_skips_wrongly_typed_payload(self, store, bad):
        loaded = store.import_entities({
            "good": {"total_recommendations": 1, "successful_recommendations": 1},
            "bad": bad,
        })
        assert loaded == 1
        assert "good" in store and "bad" not in store

    def test_concurrent_updates_serialized_per_entity(self, store):
        def worker():
            for _ in range(200):
                store.update("unit-1", CTX, TemperatureAction.MAINTAIN, 0.5)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        state = store.get("unit-1")
        assert state.total_recommendations == 800
        assert state.visit_count(CTX, TemperatureAction.MAINTAIN) == 800
