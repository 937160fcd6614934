from sharegate.middleware.observability import ObservabilityMiddleware
from sharegate.middleware.security_headers import SecurityHeadersMiddleware

__all__ = ["ObservabilityMiddleware", "SecurityHeadersMiddleware"]
