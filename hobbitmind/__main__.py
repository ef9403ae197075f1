import logging
import os
import sys

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

ENABLE_OTLP_EXPORTER = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "").strip() != ""
ENABLE_CONSOLE_SPANS = os.getenv("HOBBITMIND_CONSOLE_SPANS", "").strip() != ""


def pretty_span(span: ReadableSpan) -> str:
    parts: list[str] = [span.name]
    status = span.status
    if status is not None and status.status_code is not None:
        parts.append(status.status_code.name)
    if isinstance(span.start_time, int) and isinstance(span.end_time, int):
        parts.append(f"{int(round((span.end_time - span.start_time) / 1e6))}ms")
    return " ".join(parts) + "\n"


def configure_telemetry() -> None:
    tracer_provider = TracerProvider(resource=Resource.create({"service.name": "hobbitmind"}))
    if ENABLE_OTLP_EXPORTER:
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    if ENABLE_CONSOLE_SPANS:
        tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter(formatter=pretty_span)))
    trace.set_tracer_provider(tracer_provider)

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    configure_telemetry()

    arg = sys.argv[1] if len(sys.argv) > 1 else "http"
    match arg:
        case "http":
            from hobbitmind.entrypoints.http import main

            main()
        case _:
            raise ValueError(f"Unknown entrypoint: {arg}. Use 'http'.")
