from helm_adapter.redaction import redact_text, redact_url


def test_redact_text_masks_tokens():
    raw = "Authorization: Bearer secret-token-123 access_token=abc123 client_secret=s3cr3t"
    redacted = redact_text(raw)
    assert "secret-token-123" not in redacted
    assert "abc123" not in redacted
    assert "s3cr3t" not in redacted
    assert "[REDACTED]" in redacted


def test_redact_text_masks_azure_credentials():
    raw = "DefaultEndpointsProtocol=https;AccountName=promote;AccountKey=Zm9vYmFy;EndpointSuffix=core AZURE_CLIENT_SECRET=xyz"
    redacted = redact_text(raw)
    assert "Zm9vYmFy" not in redacted
    assert "xyz" not in redacted
    assert "AccountName=promote" in redacted


def test_redact_text_sanitizes_urls():
    raw = "Failed to call https://executor.example.com/deployments/ppr-orders-api-blue/health?sig=abc123"
    redacted = redact_text(raw)
    assert "sig=abc123" not in redacted
    assert "https://executor.example.com/..." in redacted


def test_redact_url_keeps_host_only():
    assert redact_url("https://executor.example.com/traffic/canary") == "https://executor.example.com/..."
    assert redact_url("not a url") == "<redacted-url>"
