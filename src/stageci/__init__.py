from .dsl import job, sh, uses, pipeline, JobBuilder, build
from .model import Job, Step, RetryPolicy, PipelineDefinition, TriggerEvent, JobState, RunStatus
from .definition import load_definition, parse_definition, validate_definition
from .coordinator import RunCoordinator, RunReport
from .config import Settings

__all__ = [
    "job", "sh", "uses", "pipeline", "JobBuilder", "build",
    "Job", "Step", "RetryPolicy", "PipelineDefinition", "TriggerEvent", "JobState", "RunStatus",
    "load_definition", "parse_definition", "validate_definition",
    "RunCoordinator", "RunReport", "Settings",
]
