from .model import ArtifactSpec, CacheSpec, Job, JobInstance, MatrixSpec, PipelineDefinition, RunReport, Status, Step
from .runner import load_workflow, run_workflow
# Imported after .runner so the dsl `matrix` function is not shadowed by the gridci.matrix submodule.
from .dsl import build, cache, job, JobBuilder, matrix, pipeline, pipeline_from_dict, sh, upload, wf

__all__ = [
    "build", "cache", "job", "JobBuilder", "matrix", "pipeline", "pipeline_from_dict", "sh", "upload", "wf",
    "ArtifactSpec", "CacheSpec", "Job", "JobInstance", "MatrixSpec", "PipelineDefinition", "RunReport",
    "Status", "Step", "load_workflow", "run_workflow",
]
