"""Deterministic, sticky variant assignment.

A subject is first admitted into the experiment by an inclusion hash
compared against the traffic allocation, then bucketed into a variant by a
second, independently salted hash walked over the cumulative traffic
shares. The first assignment is stored as an AssignmentRecord and returned
unchanged on every later call, so traffic edits only affect new subjects.
"""

import hashlib
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from app.core.exceptions import ExperimentNotActive
from app.models.experiment import Assignment, AssignmentRecord, ExperimentStatus, utcnow
from app.services.experiments.registry import AssignmentConfig, ExperimentRegistry

logger = structlog.get_logger("assignment")

LOCK_STRIPES = 64


def hash_to_percent(experiment_id: str, subject_id: str, salt: str) -> float:
    """Stable position of a subject in [0, 100) for the given salt."""
    hash_input = f"{experiment_id}:{subject_id}:{salt}"
    hash_bytes = hashlib.sha256(hash_input.encode()).digest()
    # First 8 bytes as unsigned int, normalized to [0, 100)
    return int.from_bytes(hash_bytes[:8], "big") / (2**64) * 100


def pick_variant(variants: Tuple[Tuple[str, float], ...], position: float) -> str:
    cumulative = 0.0
    for variant_id, share in variants:
        cumulative += share
        if position < cumulative:
            return variant_id
    # Floating point slack on the upper edge
    return variants[-1][0]


class AssignmentService:
    def __init__(
        self, registry: ExperimentRegistry, clock: Optional[Callable[[], datetime]] = None
    ):
        self.registry = registry
        self._clock = clock or utcnow
        self._stripes = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._records: Dict[Tuple[str, str], AssignmentRecord] = {}
        registry.on_complete(self.forget)

    def assign(self, experiment_id: str, subject_id: str) -> Assignment:
        """
        Return the subject's variant, assigning one on first contact.

        Raises:
            ExperimentNotFound: unknown experiment
            ExperimentNotActive: experiment is not running
        """
        key = (experiment_id, subject_id)
        # Holding the experiment lock keeps transitions out until the record is written
        with self.registry.locked_assignment_config(experiment_id) as config:
            if config.status != ExperimentStatus.RUNNING:
                raise ExperimentNotActive(experiment_id, config.status.value)

            with self._stripe(key):
                record = self._records.get(key)
                if record is not None:
                    return self._to_assignment(config, record)

                if not self._is_included(config, subject_id):
                    return Assignment(
                        experiment_id=experiment_id,
                        subject_id=subject_id,
                        variant_id=config.control_variant_id,
                        changes=dict(config.changes[config.control_variant_id]),
                        in_experiment=False,
                    )

                variant_id = pick_variant(
                    config.variants, hash_to_percent(experiment_id, subject_id, "bucket")
                )
                record = AssignmentRecord(
                    experiment_id=experiment_id,
                    subject_id=subject_id,
                    variant_id=variant_id,
                    assigned_at=self._clock(),
                )
                self._records[key] = record

        logger.debug(
            "subject_assigned",
            experiment_id=experiment_id,
            subject_id=subject_id,
            variant_id=variant_id,
        )
        return self._to_assignment(config, record)

    def assign_or_control(self, experiment_id: str, subject_id: str) -> Assignment:
        """Like assign(), but a non-running experiment yields the control experience."""
        try:
            return self.assign(experiment_id, subject_id)
        except ExperimentNotActive as e:
            logger.info(
                "assignment_fallback_to_control",
                experiment_id=experiment_id,
                subject_id=subject_id,
                status=e.status,
            )
            config = self.registry.assignment_config(experiment_id)
            record = self.get_assignment(experiment_id, subject_id)
            return Assignment(
                experiment_id=experiment_id,
                subject_id=subject_id,
                variant_id=config.control_variant_id,
                changes=dict(config.changes[config.control_variant_id]),
                in_experiment=False,
                assigned_at=record.assigned_at if record else None,
                fallback=True,
            )

    def get_assignment(self, experiment_id: str, subject_id: str) -> Optional[AssignmentRecord]:
        return self._records.get((experiment_id, subject_id))

    def records_for(self, experiment_id: str) -> List[AssignmentRecord]:
        return [r for r in list(self._records.values()) if r.experiment_id == experiment_id]

    def forget(self, experiment_id: str) -> int:
        """Drop the assignment records of a finished experiment."""
        records = self.records_for(experiment_id)
        for record in records:
            self._records.pop((experiment_id, record.subject_id), None)
        if records:
            logger.info("assignments_released", experiment_id=experiment_id, records=len(records))
        return len(records)

    @staticmethod
    def _is_included(config: AssignmentConfig, subject_id: str) -> bool:
        if subject_id in config.excluded_subjects:
            return False
        inclusion = hash_to_percent(config.experiment_id, subject_id, "inclusion")
        return inclusion < config.traffic_allocation_percent

    @staticmethod
    def _to_assignment(config: AssignmentConfig, record: AssignmentRecord) -> Assignment:
        return Assignment(
            experiment_id=record.experiment_id,
            subject_id=record.subject_id,
            variant_id=record.variant_id,
            changes=dict(config.changes.get(record.variant_id, {})),
            in_experiment=True,
            assigned_at=record.assigned_at,
        )

    def _stripe(self, key: Tuple[str, str]) -> threading.Lock:
        return self._stripes[hash(key) % LOCK_STRIPES]
