"""MapReduce protocol messages, coordinator, worker and sequential runner."""

__all__ = ["protocol", "coordinator", "worker", "sequential"]