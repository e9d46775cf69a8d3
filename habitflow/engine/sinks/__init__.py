from .completion_sinks import OfflineQueueSink, Transport

__all__ = ["OfflineQueueSink", "Transport"]
