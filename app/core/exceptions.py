from typing import Any, List, Optional


class EngineError(Exception):
    """Base class for conversion engine errors."""


class ValidationError(EngineError):
    """Experiment configuration rejected before it was stored."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class ConflictingExperiment(EngineError):
    pass


class ExperimentNotFound(EngineError):
    def __init__(self, experiment_id: str):
        self.experiment_id = experiment_id
        super().__init__(f"Experiment {experiment_id} not found")


class InvalidTransition(EngineError):
    def __init__(self, experiment_id: str, current: str, target: str):
        self.experiment_id = experiment_id
        self.current = current
        self.target = target
        super().__init__(f"Experiment {experiment_id} cannot move from {current} to {target}")


class ExperimentNotActive(EngineError):
    def __init__(self, experiment_id: str, status: str):
        self.experiment_id = experiment_id
        self.status = status
        super().__init__(f"Experiment {experiment_id} is {status}, not running")


class BufferOverflow(EngineError):
    def __init__(self, capacity: int, dropped: int):
        self.capacity = capacity
        self.dropped = dropped
        super().__init__(f"Ingestion buffer full ({capacity} events), {dropped} dropped so far")


class AnalysisCancelled(EngineError):
    """Raised when a funnel analysis is aborted; carries what was computed."""

    def __init__(self, partial: Optional[List[Any]] = None):
        self.partial = partial or []
        super().__init__(f"Analysis cancelled after {len(self.partial)} steps")
