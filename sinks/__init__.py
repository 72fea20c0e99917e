from sinks.output import DatabaseSink, Sink, SinkError, TagSink

__all__ = ["DatabaseSink", "Sink", "SinkError", "TagSink"]
