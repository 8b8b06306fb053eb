from .dsl import job, wf, JobBuilder, build
from .coordinator import Coordinator, PipelineRun, run_pipeline
from .dag import ExecutionGraph, resolve
from .loader import load_definition
from .model import JobSpec, JobResult, JobStatus, PipelineDefinition, PipelineResult, Worker
from .pool import WorkerPool

__all__ = [
    "job", "wf", "JobBuilder", "build",
    "Coordinator", "PipelineRun", "run_pipeline",
    "ExecutionGraph", "resolve", "load_definition",
    "JobSpec", "JobResult", "JobStatus", "PipelineDefinition", "PipelineResult", "Worker",
    "WorkerPool",
]
