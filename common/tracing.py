"""
Correlation ID based request tracing
Spans are emitted as structured log lines; no external collector involved.
"""
import uuid
import time
import json
from typing import Optional
from contextvars import ContextVar
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

class TraceSpan:
    """A timed unit of work inside one trace"""

    def __init__(self, name: str, trace_id: str = None, parent_span_id: str = None):
        self.span_id = uuid.uuid4().hex[:8]
        self.trace_id = trace_id or trace_id_var.get() or uuid.uuid4().hex[:16]
        self.parent_span_id = parent_span_id or span_id_var.get()
        self.name = name
        self.start_time = time.time()
        self.end_time = None
        self.tags = {}
        self.status = "ok"
        self._tokens = None

    def add_tag(self, key: str, value):
        self.tags[key] = value
        return self

    def set_error(self, error: Exception):
        self.status = "error"
        self.add_tag("error.type", type(error).__name__)
        self.add_tag("error.message", str(error))
        return self

    def finish(self):
        self.end_time = time.time()
        trace_data = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.name,
            "duration_ms": round((self.end_time - self.start_time) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
        }
        logger.debug(f"TRACE: {json.dumps(trace_data, default=str)}")
        return self

    def __enter__(self):
        self._tokens = (trace_id_var.set(self.trace_id), span_id_var.set(self.span_id))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.set_error(exc_val)
        self.finish()
        trace_token, span_token = self._tokens
        span_id_var.reset(span_token)
        trace_id_var.reset(trace_token)

class Tracer:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: str = None, parent_span_id: str = None) -> TraceSpan:
        span = TraceSpan(name, trace_id, parent_span_id)
        span.add_tag("service.name", self.service_name)
        return span

    def start_span_from_request(self, request: Request, operation_name: str) -> TraceSpan:
        """Continue the caller's trace when X-Trace-ID / X-Span-ID are present"""
        span = self.start_span(
            operation_name,
            request.headers.get("X-Trace-ID"),
            request.headers.get("X-Span-ID"),
        )
        span.add_tag("http.method", request.method)
        span.add_tag("http.path", request.url.path)
        return span

vouch_tracer = Tracer("vouch-service")

def get_current_trace_id() -> Optional[str]:
    return trace_id_var.get()

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """FastAPI middleware: one span per request, ids exposed on request.state"""
    operation_name = f"{request.method} {request.url.path}"

    with tracer.start_span_from_request(request, operation_name) as span:
        request.state.trace_id = span.trace_id
        request.state.request_id = request.headers.get("X-Request-ID") or span.span_id
        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.status = "error"
        response.headers["X-Trace-ID"] = span.trace_id
        response.headers["X-Span-ID"] = span.span_id
        return response
