"""Planner gateway: turns chat instructions into questions or change-sets."""

from larkbot.config import AppConfig
from larkbot.planner.base import Planner
from larkbot.planner.glm import GLMPlanner
from larkbot.planner.rate_limit import GLMRateLimiter
from larkbot.planner.retrying import RetryingPlanner
from larkbot.planner.stub import StubPlanner


def make_planner(config: AppConfig) -> Planner:
    """Build the planner selected by planner.backend (glm or stub)."""
    pc = config.planner
    if pc.backend == "stub":
        return StubPlanner()
    if pc.backend != "glm":
        raise ValueError(f"Unknown planner backend: {pc.backend}")
    glm = GLMPlanner(
        api_key=config.planner_api_key_resolved,
        api_url=pc.api_url,
        model=pc.model,
        temperature=pc.temperature,
        max_tokens=pc.max_tokens,
        timeout=pc.timeout,
        rate_limiter=GLMRateLimiter(),
    )
    return RetryingPlanner(glm, max_attempts=pc.max_attempts)


__all__ = ["GLMPlanner", "GLMRateLimiter", "Planner", "RetryingPlanner", "StubPlanner", "make_planner"]
