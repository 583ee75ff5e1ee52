"""Model-routing pipelines on Starlette and span tracing for an LLM gateway."""

__version__ = "0.4.5"
__all__ = ["pipeline", "telemetry"]