"""Domain exceptions raised by the quality pipeline."""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class RunInProgressError(PipelineError):
    """Another mutating run currently holds the run lock."""

    def __init__(self, holder: dict | None = None):
        self.holder = holder or {}
        run_id = self.holder.get("run_id", "unknown")
        super().__init__(f"Another pipeline run is in progress (run_id={run_id})")


class RunNotFoundError(PipelineError):
    """No ScoringRun exists with the given id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


class RunNotResumableError(PipelineError):
    """The run is not in a state that allows resuming."""

    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run {run_id} cannot be resumed from status '{status}'")


class SnapshotUnavailableError(PipelineError):
    """No corpus statistics snapshot could be loaded."""


class CandidateReviewError(PipelineError):
    """A duplicate candidate review action was rejected."""


class CoherenceUnavailableError(PipelineError):
    """The narrative coherence scorer could not produce a score."""


class ReportNotFoundError(PipelineError):
    """No report exists with the given id."""

    def __init__(self, report_id: str):
        self.report_id = report_id
        super().__init__(f"Report {report_id} not found")
