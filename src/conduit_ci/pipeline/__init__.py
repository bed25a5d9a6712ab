"""Pipeline definition loading (YAML document -> ``PipelineDefinition``)."""

from conduit_ci.pipeline.definition import (
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_PIPELINE_TIMEOUT_SECONDS,
    dump_pipeline,
    load_pipeline,
    parse_pipeline,
    parse_pipeline_text,
)

__all__ = [
    "DEFAULT_MAX_DELAY_MS",
    "DEFAULT_PIPELINE_TIMEOUT_SECONDS",
    "dump_pipeline",
    "load_pipeline",
    "parse_pipeline",
    "parse_pipeline_text",
]
