from cfmom.event_log.writer import EventLog

__all__ = ["EventLog"]
