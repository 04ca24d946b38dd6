import logging

_PROBE_PATHS = ("/healthz", "/readyz")


class HealthEndpointFilter(logging.Filter):
    """Drop access-log lines for successful health probes; keep failing ones."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if not any(path in message for path in _PROBE_PATHS):
            return True

        # django.server attaches the response status to the record.
        status_code = getattr(record, "status_code", None)
        if status_code is not None:
            return int(status_code) >= 400
        return " 200 " not in message
