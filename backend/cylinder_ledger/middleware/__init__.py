from cylinder_ledger.middleware.request_log import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
