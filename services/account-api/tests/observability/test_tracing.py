"""Tests for tracing configuration."""

from unittest.mock import MagicMock, patch

from app.observability.tracing import configure_tracing


class TestConfigureTracing:
    """Tests for configure_tracing setup."""

    def test_sets_tracer_provider(self) -> None:
        with patch("app.observability.tracing.trace") as mock_trace:
            configure_tracing(service_name="test-svc")

        provider = mock_trace.set_tracer_provider.call_args[0][0]
        assert provider.resource.attributes["service.name"] == "test-svc"

    def test_no_exporter_without_endpoint(self) -> None:
        with (
            patch("app.observability.tracing.trace"),
            patch("app.observability.tracing.OTLPSpanExporter") as mock_exporter,
        ):
            configure_tracing(service_name="test-svc")

        mock_exporter.assert_not_called()

    def test_exporter_with_endpoint(self) -> None:
        with (
            patch("app.observability.tracing.trace"),
            patch("app.observability.tracing.OTLPSpanExporter") as mock_exporter,
            patch("app.observability.tracing.BatchSpanProcessor") as mock_processor,
        ):
            mock_processor.return_value = MagicMock()
            configure_tracing(
                service_name="test-svc", otlp_endpoint="http://collector:4318"
            )

        mock_exporter.assert_called_once_with(endpoint="http://collector:4318")
        mock_processor.assert_called_once_with(mock_exporter.return_value)
