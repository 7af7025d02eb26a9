from prometheus_client import Counter, Histogram, Gauge

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests in progress",
)
OTP_ISSUED = Counter(
    "otp_issued_total",
    "One-time codes issued",
    ["purpose"],
)
OTP_DISPATCH_FAILURES = Counter(
    "otp_dispatch_failures_total",
    "One-time codes rolled back because delivery failed",
    ["purpose"],
)
OTP_VERIFICATIONS = Counter(
    "otp_verifications_total",
    "One-time code verification outcomes",
    ["purpose", "result"],
)


def get_route_name(scope: dict) -> str:
    route = scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return scope.get("path", "unknown")
