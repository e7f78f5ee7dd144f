"""Pipeline orchestration: job coordinator and the pieces its graphs share."""

from src.pipelines.coordinator import PipelineCoordinator, get_coordinator, set_coordinator

__all__ = ["PipelineCoordinator", "get_coordinator", "set_coordinator"]
