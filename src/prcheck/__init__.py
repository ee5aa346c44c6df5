from .dsl import sh, cache, pipeline, expand_matrix, wf, PipelineBuilder, build
from .runner import run_pipeline, execute_run, run_step, load_workflow, CancelToken
from .model import Pipeline, Step, CacheBinding, Trigger, EnvironmentDescriptor, RunResult, StepResult

__all__ = [
    "sh", "cache", "pipeline", "expand_matrix", "wf", "PipelineBuilder", "build",
    "run_pipeline", "execute_run", "run_step", "load_workflow", "CancelToken",
    "Pipeline", "Step", "CacheBinding", "Trigger", "EnvironmentDescriptor", "RunResult", "StepResult",
]
