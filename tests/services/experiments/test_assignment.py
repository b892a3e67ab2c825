import threading
from collections import Counter

import pytest

from app.core.exceptions import ExperimentNotActive, ExperimentNotFound
from app.models.experiment import ExperimentStatus
from app.services.experiments.assignment import AssignmentService, hash_to_percent, pick_variant
from app.services.experiments.registry import ExperimentRegistry


@pytest.fixture
def registry(clock):
    return ExperimentRegistry(clock=clock)


@pytest.fixture
def service(registry, clock):
    return AssignmentService(registry, clock=clock)


@pytest.fixture
def running(registry, experiment_request):
    registry.create(experiment_request())
    registry.start("headline-test")
    return "headline-test"


class TestHashing:
    def test_hash_is_stable_and_in_range(self):
        value = hash_to_percent("exp", "user-1", "bucket")

        assert value == hash_to_percent("exp", "user-1", "bucket")
        assert 0 <= value < 100

    def test_salts_are_independent(self):
        assert hash_to_percent("exp", "user-1", "bucket") != hash_to_percent(
            "exp", "user-1", "inclusion"
        )

    def test_pick_variant_walks_cumulative_shares(self):
        variants = (("a", 20.0), ("b", 30.0), ("c", 50.0))

        assert pick_variant(variants, 0.0) == "a"
        assert pick_variant(variants, 19.99) == "a"
        assert pick_variant(variants, 20.0) == "b"
        assert pick_variant(variants, 49.99) == "b"
        assert pick_variant(variants, 99.99) == "c"


class TestAssign:
    def test_assignment_is_stable(self, service, running):
        first = {f"u{i}": service.assign(running, f"u{i}").variant_id for i in range(200)}

        for _ in range(3):
            for subject_id, variant_id in first.items():
                assert service.assign(running, subject_id).variant_id == variant_id

    def test_assignment_returns_variant_changes(self, service, running):
        assignment = service.assign(running, "u1")

        assert assignment.in_experiment
        assert assignment.changes == {"headline": assignment.variant_id}
        assert service.get_assignment(running, "u1").variant_id == assignment.variant_id

    def test_traffic_conservation(self, registry, service, experiment_request):
        registry.create(experiment_request("split", shares=(20.0, 30.0, 50.0)))
        registry.start("split")

        counts = Counter(service.assign("split", f"subject-{i}").variant_id for i in range(20_000))

        assert counts["control"] / 20_000 == pytest.approx(0.20, abs=0.02)
        assert counts["variant_b"] / 20_000 == pytest.approx(0.30, abs=0.02)
        assert counts["variant_c"] / 20_000 == pytest.approx(0.50, abs=0.02)

    def test_traffic_allocation_limits_entry(self, registry, service, experiment_request):
        registry.create(experiment_request("partial", traffic_allocation_percent=25))
        registry.start("partial")

        results = [service.assign("partial", f"s{i}") for i in range(8_000)]
        included = [r for r in results if r.in_experiment]

        assert len(included) / 8_000 == pytest.approx(0.25, abs=0.02)
        outside = next(r for r in results if not r.in_experiment)
        assert outside.variant_id == "control"
        assert service.get_assignment("partial", outside.subject_id) is None

    def test_excluded_subjects_get_control(self, registry, service, experiment_request):
        registry.create(experiment_request("excl", excluded_subjects=["qa-bot"]))
        registry.start("excl")

        assignment = service.assign("excl", "qa-bot")

        assert assignment.variant_id == "control"
        assert not assignment.in_experiment

    def test_traffic_edit_does_not_move_existing_subjects(self, registry, service, running):
        before = {f"u{i}": service.assign(running, f"u{i}").variant_id for i in range(300)}

        registry.update_traffic(running, {"control": 0, "variant_b": 100})

        for subject_id, variant_id in before.items():
            assert service.assign(running, subject_id).variant_id == variant_id
        assert service.assign(running, "newcomer").variant_id == "variant_b"

    def test_concurrent_first_assignment_agrees(self, service, running):
        results = []

        def worker():
            results.append(service.assign(running, "racer").variant_id)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(results)) == 1
        assert len(service.records_for(running)) == 1


class TestNotActive:
    def test_draft_raises(self, registry, service, experiment_request):
        registry.create(experiment_request())

        with pytest.raises(ExperimentNotActive):
            service.assign("headline-test", "u1")

    def test_unknown_experiment_raises(self, service):
        with pytest.raises(ExperimentNotFound):
            service.assign("missing", "u1")

    def test_paused_falls_back_to_control_and_keeps_record(self, registry, service, running):
        subject = next(
            f"u{i}" for i in range(100) if service.assign(running, f"u{i}").variant_id != "control"
        )
        registry.pause(running)

        fallback = service.assign_or_control(running, subject)

        assert fallback.fallback
        assert fallback.variant_id == "control"
        assert not fallback.in_experiment

        registry.resume(running)
        assert service.assign(running, subject).variant_id == "variant_b"

    def test_transition_waits_for_assignment_in_progress(
        self, registry, service, running, clock
    ):
        completer = threading.Thread(target=registry.complete, args=(running,))
        blocked = []

        def racing_clock():
            # Runs while the record is being written
            completer.start()
            completer.join(timeout=0.2)
            blocked.append(completer.is_alive())
            return clock()

        service._clock = racing_clock
        assignment = service.assign(running, "u1")
        completer.join(timeout=5)

        assert blocked == [True]
        assert assignment.in_experiment
        assert registry.get(running).status == ExperimentStatus.COMPLETED
        assert service.get_assignment(running, "u1") is None
        with pytest.raises(ExperimentNotActive):
            service.assign(running, "u2")

    def test_completion_releases_records(self, registry, service, running):
        for i in range(10):
            service.assign(running, f"u{i}")

        registry.complete(running)

        assert service.records_for(running) == []

    def test_completed_falls_back_to_control(self, registry, service, running):
        registry.complete(running)

        assignment = service.assign_or_control(running, "u1")

        assert assignment.fallback
        assert assignment.changes == {"headline": "control"}
