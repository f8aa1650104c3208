"""Output streaming pipeline: batching, sequencing, replay and fan-out."""

from termrelay.streaming.pipeline import OutputPipeline, Subscription

__all__ = ["OutputPipeline", "Subscription"]
