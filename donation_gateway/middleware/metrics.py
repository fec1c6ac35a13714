"""
Prometheus metrics middleware for the donation payment service
"""
import time
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Define Prometheus metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

# Payment flow metrics
donations_initiated_total = Counter(
    'donations_initiated_total',
    'Donations initiated, by outcome',
    ['outcome']
)

payment_callbacks_total = Counter(
    'payment_callbacks_total',
    'Processor callbacks received, by outcome',
    ['outcome']
)

processor_requests_total = Counter(
    'processor_requests_total',
    'Calls made to the payment processor',
    ['operation', 'status']
)

processor_request_duration_seconds = Histogram(
    'processor_request_duration_seconds',
    'Payment processor call duration in seconds',
    ['operation']
)

notifications_total = Counter(
    'donation_notifications_total',
    'Donation receipt notifications, by outcome',
    ['status']
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics for HTTP requests"""

    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time

        # Use the route template so path parameters don't explode cardinality
        endpoint = request.url.path
        route = request.scope.get('route')
        if route is not None and hasattr(route, 'path'):
            endpoint = route.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=str(response.status_code)
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        return response


async def metrics_endpoint(request: Request):
    """Endpoint to expose Prometheus metrics"""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
