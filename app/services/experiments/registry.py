import copy
import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

import structlog

from app.core.exceptions import (
    ConflictingExperiment,
    ExperimentNotFound,
    InvalidTransition,
    ValidationError,
)
from app.models.experiment import (
    ALLOWED_TRANSITIONS,
    Experiment,
    ExperimentStatus,
    LifecycleEvent,
    Variant,
    utcnow,
)
from app.models.schemas import CreateExperimentRequest
from app.services.experiments.stats import ExperimentEvaluation, VariantData, evaluate_experiment

logger = structlog.get_logger("experiments")

# Allowed rounding slack when checking that shares add up to 100%
SHARE_TOLERANCE = 0.1


@dataclass(frozen=True)
class AssignmentConfig:
    """What the assignment service needs to know, copied under the experiment lock."""

    experiment_id: str
    status: ExperimentStatus
    traffic_allocation_percent: float
    variants: Tuple[Tuple[str, float], ...]  # (variant_id, traffic_share)
    changes: Dict[str, Dict]
    excluded_subjects: FrozenSet[str]

    @property
    def control_variant_id(self) -> str:
        return self.variants[0][0]


@dataclass(frozen=True)
class ExperimentsOverview:
    total_experiments: int
    draft_experiments: int
    running_experiments: int
    paused_experiments: int
    completed_experiments: int
    experiments_with_winner: int
    total_participants: int
    avg_participants: float


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def validate_variants(variants: List[Variant]) -> List[str]:
    errors = []
    if len(variants) < 2:
        errors.append("Experiment must have at least 2 variants")

    total_share = sum(v.traffic_share for v in variants)
    if abs(total_share - 100) > SHARE_TOLERANCE:
        errors.append(f"Variant traffic shares must sum to 100% (got {total_share:g}%)")

    ids = [v.variant_id for v in variants]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        errors.append(f"Duplicate variant ids: {', '.join(duplicates)}")

    if any(v.traffic_share < 0 for v in variants):
        errors.append("Variant traffic shares cannot be negative")

    return errors


class ExperimentRegistry:
    """
    Owns experiment definitions, their lifecycle and their counters.

    Lock order is registry lock, then experiment lock. Transitions hold both
    so the one-active-experiment-per-goal rule is checked atomically;
    counter updates and snapshots only take the experiment lock.
    """

    def __init__(
        self,
        significance_threshold: float = 95.0,
        minimum_sample_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.significance_threshold = significance_threshold
        self.minimum_sample_size = minimum_sample_size
        self._clock = clock or utcnow

        self._registry_lock = threading.Lock()
        self._experiments: Dict[str, Experiment] = {}
        self._locks: Dict[str, threading.RLock] = {}

        # experiment_id -> subject_id -> variant_id, and converted subjects
        self._exposed: Dict[str, Dict[str, str]] = {}
        self._converted: Dict[str, Set[str]] = {}
        self._completion_listeners: List[Callable[[str], None]] = []

    # --- Definitions ---

    def create(self, request: CreateExperimentRequest) -> Experiment:
        variants = [
            Variant(
                variant_id=v.variant_id or _slugify(v.name) or f"variant_{index}",
                name=v.name,
                traffic_share=v.traffic_share,
                changes=dict(v.changes),
            )
            for index, v in enumerate(request.variants)
        ]
        errors = validate_variants(variants)
        if errors:
            raise ValidationError(errors)

        experiment = Experiment(
            experiment_id=request.experiment_id or f"exp_{uuid.uuid4().hex[:12]}",
            name=request.name,
            description=request.description,
            goal_metric=request.goal_metric,
            scope=request.scope,
            traffic_allocation_percent=request.traffic_allocation_percent,
            variants=variants,
            minimum_detectable_effect=request.minimum_detectable_effect,
            excluded_subjects=set(request.excluded_subjects),
            created_at=self._clock(),
        )
        experiment.history.append(
            LifecycleEvent("created", None, ExperimentStatus.DRAFT, experiment.created_at)
        )

        with self._registry_lock:
            if experiment.experiment_id in self._experiments:
                raise ConflictingExperiment(
                    f"Experiment {experiment.experiment_id} already exists"
                )
            self._check_goal_conflict(experiment)

            self._experiments[experiment.experiment_id] = experiment
            self._locks[experiment.experiment_id] = threading.RLock()
            self._exposed[experiment.experiment_id] = {}
            self._converted[experiment.experiment_id] = set()

        logger.info(
            "experiment_created",
            experiment_id=experiment.experiment_id,
            goal_metric=experiment.goal_metric,
            variants=len(variants),
        )
        return self.get(experiment.experiment_id)

    def get(self, experiment_id: str) -> Experiment:
        with self._experiment(experiment_id) as experiment:
            return copy.deepcopy(experiment)

    def snapshot(self, experiment_id: str) -> Experiment:
        """Consistent copy taken under the experiment lock."""
        return self.get(experiment_id)

    def exists(self, experiment_id: str) -> bool:
        with self._registry_lock:
            return experiment_id in self._experiments

    def list(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        with self._registry_lock:
            ids = list(self._experiments)

        experiments = [self.get(experiment_id) for experiment_id in ids]
        if status is not None:
            experiments = [e for e in experiments if e.status == status]
        return sorted(experiments, key=lambda e: e.created_at, reverse=True)

    def list_running(self) -> List[Experiment]:
        return self.list(status=ExperimentStatus.RUNNING)

    def assignment_config(self, experiment_id: str) -> AssignmentConfig:
        with self.locked_assignment_config(experiment_id) as config:
            return config

    @contextmanager
    def locked_assignment_config(self, experiment_id: str) -> Iterator[AssignmentConfig]:
        """
        Yield the assignment view while holding the experiment lock, so no
        transition can land between the status check and a new assignment.
        """
        with self._experiment(experiment_id) as experiment:
            yield AssignmentConfig(
                experiment_id=experiment.experiment_id,
                status=experiment.status,
                traffic_allocation_percent=experiment.traffic_allocation_percent,
                variants=tuple((v.variant_id, v.traffic_share) for v in experiment.variants),
                changes={v.variant_id: copy.deepcopy(v.changes) for v in experiment.variants},
                excluded_subjects=frozenset(experiment.excluded_subjects),
            )

    def on_complete(self, callback: Callable[[str], None]) -> None:
        """Register a callback run with the experiment id after it completes."""
        self._completion_listeners.append(callback)

    def update_traffic(self, experiment_id: str, traffic_shares: Dict[str, float]) -> Experiment:
        """
        Change variant shares. Only subjects assigned after the edit are
        affected; existing assignment records are never rewritten.
        """
        with self._experiment(experiment_id) as experiment:
            if experiment.status == ExperimentStatus.COMPLETED:
                raise InvalidTransition(experiment_id, experiment.status.value, "traffic update")

            unknown = sorted(set(traffic_shares) - {v.variant_id for v in experiment.variants})
            if unknown:
                raise ValidationError([f"Unknown variant ids: {', '.join(unknown)}"])

            updated = [
                Variant(
                    variant_id=v.variant_id,
                    name=v.name,
                    traffic_share=traffic_shares.get(v.variant_id, v.traffic_share),
                )
                for v in experiment.variants
            ]
            errors = validate_variants(updated)
            if errors:
                raise ValidationError(errors)

            for variant, new in zip(experiment.variants, updated):
                variant.traffic_share = new.traffic_share

            logger.info(
                "experiment_traffic_updated",
                experiment_id=experiment_id,
                traffic_shares={v.variant_id: v.traffic_share for v in experiment.variants},
            )
        return self.get(experiment_id)

    # --- Lifecycle ---

    def start(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.RUNNING, "started")

    def pause(self, experiment_id: str, reason: str = "") -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.PAUSED, "paused", reason)

    def resume(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.RUNNING, "resumed")

    def complete(self, experiment_id: str, reason: str = "completed") -> Experiment:
        experiment = self._transition(
            experiment_id, ExperimentStatus.COMPLETED, "completed", reason
        )
        for callback in list(self._completion_listeners):
            callback(experiment_id)
        return experiment

    def _transition(
        self, experiment_id: str, target: ExperimentStatus, action: str, reason: str = ""
    ) -> Experiment:
        with self._registry_lock:
            if experiment_id not in self._experiments:
                raise ExperimentNotFound(experiment_id)
            lock = self._locks[experiment_id]

            with lock:
                experiment = self._experiments[experiment_id]
                current = experiment.status
                if target not in ALLOWED_TRANSITIONS[current]:
                    raise InvalidTransition(experiment_id, current.value, target.value)

                # Resuming is the only way back into Running besides starting
                if action == "resumed" and current != ExperimentStatus.PAUSED:
                    raise InvalidTransition(experiment_id, current.value, target.value)
                if action == "started" and current != ExperimentStatus.DRAFT:
                    raise InvalidTransition(experiment_id, current.value, target.value)

                if target == ExperimentStatus.RUNNING:
                    errors = validate_variants(experiment.variants)
                    if errors:
                        raise ValidationError(errors)
                    self._check_goal_conflict(experiment)

                now = self._clock()
                if action == "started":
                    experiment.started_at = now
                if target == ExperimentStatus.COMPLETED:
                    experiment.ended_at = now
                    evaluation = self._evaluate_locked(experiment)
                    if evaluation is not None and evaluation.winner_variant_id:
                        experiment.winner_variant_id = evaluation.winner_variant_id
                    # Counters are frozen from here on
                    self._exposed[experiment_id] = {}
                    self._converted[experiment_id] = set()

                experiment.status = target
                experiment.history.append(LifecycleEvent(action, current, target, now, reason))

                logger.info(
                    f"experiment_{action}",
                    experiment_id=experiment_id,
                    from_status=current.value,
                    to_status=target.value,
                    winner_variant_id=experiment.winner_variant_id,
                    reason=reason or None,
                )
                return copy.deepcopy(experiment)

    def _check_goal_conflict(self, candidate: Experiment) -> None:
        # Caller holds the registry lock
        for other in self._experiments.values():
            if other.experiment_id == candidate.experiment_id:
                continue
            if (
                other.is_active
                and other.goal_metric == candidate.goal_metric
                and other.scope == candidate.scope
            ):
                raise ConflictingExperiment(
                    f"Experiment {other.experiment_id} is already {other.status.value} "
                    f"for goal '{candidate.goal_metric}' in scope '{candidate.scope}'"
                )

    # --- Counters ---

    def record_exposure(self, experiment_id: str, subject_id: str, variant_id: str) -> bool:
        """Count a subject as a visitor of its variant, once."""
        with self._experiment(experiment_id) as experiment:
            if not experiment.is_active:
                return False
            exposed = self._exposed[experiment_id]
            if subject_id in exposed:
                return False
            variant = experiment.variant(variant_id)
            if variant is None:
                return False
            exposed[subject_id] = variant_id
            variant.visitors += 1
            return True

    def record_conversion(self, experiment_id: str, subject_id: str) -> bool:
        """Count a conversion for an exposed subject, once."""
        with self._experiment(experiment_id) as experiment:
            if not experiment.is_active:
                return False
            variant_id = self._exposed[experiment_id].get(subject_id)
            converted = self._converted[experiment_id]
            if variant_id is None or subject_id in converted:
                return False
            converted.add(subject_id)
            experiment.variant(variant_id).conversions += 1
            return True

    # --- Analysis ---

    def evaluate(self, experiment_id: str) -> ExperimentEvaluation:
        with self._experiment(experiment_id) as experiment:
            return evaluate_experiment(
                self._variant_data(experiment),
                self.significance_threshold,
                self.minimum_sample_size,
            )

    def summary(self) -> ExperimentsOverview:
        experiments = self.list()
        by_status = {status: 0 for status in ExperimentStatus}
        for e in experiments:
            by_status[e.status] += 1

        total_participants = sum(e.total_visitors for e in experiments)
        return ExperimentsOverview(
            total_experiments=len(experiments),
            draft_experiments=by_status[ExperimentStatus.DRAFT],
            running_experiments=by_status[ExperimentStatus.RUNNING],
            paused_experiments=by_status[ExperimentStatus.PAUSED],
            completed_experiments=by_status[ExperimentStatus.COMPLETED],
            experiments_with_winner=sum(1 for e in experiments if e.winner_variant_id),
            total_participants=total_participants,
            avg_participants=(total_participants / len(experiments)) if experiments else 0.0,
        )

    def _evaluate_locked(self, experiment: Experiment) -> Optional[ExperimentEvaluation]:
        if len(experiment.variants) < 2:
            return None
        return evaluate_experiment(
            self._variant_data(experiment),
            self.significance_threshold,
            self.minimum_sample_size,
        )

    @staticmethod
    def _variant_data(experiment: Experiment) -> List[VariantData]:
        return [
            VariantData(
                variant_id=v.variant_id,
                visitors=v.visitors,
                conversions=v.conversions,
                is_control=index == 0,
            )
            for index, v in enumerate(experiment.variants)
        ]

    @contextmanager
    def _experiment(self, experiment_id: str) -> Iterator[Experiment]:
        with self._registry_lock:
            experiment = self._experiments.get(experiment_id)
            lock = self._locks.get(experiment_id)
        if experiment is None:
            raise ExperimentNotFound(experiment_id)
        with lock:
            yield experiment
