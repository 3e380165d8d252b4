"""
MonitHQ - SSL Checker Tests
"""

import asyncio
import ssl

import pytest
from datetime import datetime, timezone, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ssl_checker import (
    check_ssl_certificate,
    run_ssl_check,
    parse_certificate,
    get_ssl_status_text,
    get_ssl_status_color,
    should_send_ssl_alert,
    format_ssl_info,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_certificate(not_before, not_after, common_name="example.com", issuer_org="Let's Encrypt"):
    """Self-signed certificate and its key."""
    key = ec.generate_private_key(ec.SECP256R1())
    issuer = [x509.NameAttribute(NameOID.COMMON_NAME, "R3")]
    if issuer_org:
        issuer.insert(0, x509.NameAttribute(NameOID.ORGANIZATION_NAME, issuer_org))
    cert = x509.CertificateBuilder()\
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))\
        .issuer_name(x509.Name(issuer))\
        .public_key(key.public_key())\
        .serial_number(0x04ABCDEF)\
        .not_valid_before(not_before)\
        .not_valid_after(not_after)\
        .sign(key, hashes.SHA256())
    return cert, key


def der_of(cert) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


class TestCertificateParsing:

    def test_valid_certificate_summary(self):
        cert, _ = make_certificate(NOW - timedelta(days=59), NOW + timedelta(days=30))
        info = parse_certificate(der_of(cert), "example.com", now=NOW)

        assert info["valid"] is True
        assert info["is_https"] is True
        assert info["issuer"] == "Let's Encrypt"
        assert info["subject"] == "example.com"
        assert info["days_remaining"] == 30
        assert info["valid_to"] == (NOW + timedelta(days=30)).isoformat()
        assert info["serial_number"] == "04ABCDEF"
        assert len(info["fingerprint"]) == 64
        assert info["error"] is None

    def test_expired_certificate_keeps_its_dates(self):
        cert, _ = make_certificate(NOW - timedelta(days=90), NOW - timedelta(days=2))
        info = parse_certificate(der_of(cert), "example.com", now=NOW)

        assert info["valid"] is False
        assert info["days_remaining"] == -2
        assert info["valid_from"] == (NOW - timedelta(days=90)).isoformat()

    def test_not_yet_valid_certificate(self):
        cert, _ = make_certificate(NOW + timedelta(days=1), NOW + timedelta(days=91))
        info = parse_certificate(der_of(cert), "example.com", now=NOW)
        assert info["valid"] is False
        assert info["days_remaining"] == 91

    def test_issuer_falls_back_to_common_name(self):
        cert, _ = make_certificate(NOW - timedelta(days=1), NOW + timedelta(days=60), issuer_org=None)
        assert parse_certificate(der_of(cert), "example.com", now=NOW)["issuer"] == "R3"

    def test_garbage_is_rejected(self):
        with pytest.raises(ValueError):
            parse_certificate(b"not a certificate", "example.com", now=NOW)

    def test_plain_http_is_not_checked(self):
        info = run_ssl_check("http://example.com")
        assert info == {"valid": False, "is_https": False, "error": "Not an HTTPS URL"}


class TestLiveHandshake:

    def test_expired_self_signed_certificate_is_still_read(self, tmp_path):
        now = datetime.now(timezone.utc)
        cert, key = make_certificate(now - timedelta(days=90), now - timedelta(days=2), common_name="localhost")
        cert_file = tmp_path / "cert.pem"
        key_file = tmp_path / "key.pem"
        cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        key_file.write_bytes(key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ))

        server_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        server_ctx.load_cert_chain(str(cert_file), str(key_file))

        async def handle(reader, writer):
            writer.close()

        async def scenario():
            server = await asyncio.start_server(handle, "127.0.0.1", 0, ssl=server_ctx)
            port = server.sockets[0].getsockname()[1]
            try:
                return await check_ssl_certificate(f"https://127.0.0.1:{port}/", timeout=5)
            finally:
                server.close()

        info = asyncio.run(scenario())

        assert info["is_https"] is True
        assert info["valid"] is False
        assert info["days_remaining"] < 0
        assert info["subject"] == "localhost"
        assert info["authorized"] is False
        assert info["error"]

    def test_connection_refused_is_reported(self):
        async def closed_port():
            server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
            port = server.sockets[0].getsockname()[1]
            server.close()
            await server.wait_closed()
            return await check_ssl_certificate(f"https://127.0.0.1:{port}/", timeout=5)

        info = asyncio.run(closed_port())
        assert info["valid"] is False
        assert info["is_https"] is True
        assert "days_remaining" not in info
        assert info["error"]


class TestStatusThresholds:

    @pytest.mark.parametrize("days,text,color", [
        (-1, "Expired", "red"),
        (3, "Expires Soon", "red"),
        (10, "Expiring", "orange"),
        (20, "Attention Needed", "yellow"),
        (90, "Valid", "green"),
    ])
    def test_thresholds(self, days, text, color):
        assert get_ssl_status_text(days) == text
        assert get_ssl_status_color(days) == color

    def test_format_without_certificate(self):
        formatted = format_ssl_info({"valid": False, "is_https": True, "error": "SSL check timeout"})
        assert formatted["status"] == "Invalid"
        assert formatted["message"] == "SSL check timeout"

    def test_format_valid(self):
        formatted = format_ssl_info({"valid": True, "days_remaining": 12, "issuer": "R3", "authorized": True})
        assert formatted["status"] == "Expiring"
        assert formatted["message"] == "12 days remaining"

    def test_format_expired(self):
        formatted = format_ssl_info({
            "valid": False, "days_remaining": -3, "authorized": False, "error": "certificate has expired",
        })
        assert formatted["status"] == "Expired"
        assert formatted["status_color"] == "red"
        assert formatted["message"] == "Expired 3 days ago (certificate has expired)"

    def test_format_not_yet_valid(self):
        formatted = format_ssl_info({"valid": False, "days_remaining": 91, "authorized": True})
        assert formatted["status"] == "Not Yet Valid"
        assert formatted["status_color"] == "red"


class TestAlertMilestones:

    def test_no_alert_beyond_threshold(self):
        assert not should_send_ssl_alert(45, 30)

    def test_first_alert_inside_threshold(self):
        assert should_send_ssl_alert(25, 30, None)

    def test_milestone_after_a_day(self):
        assert should_send_ssl_alert(14, 30, NOW - timedelta(days=2), now=NOW)

    def test_milestone_same_day_is_suppressed(self):
        assert not should_send_ssl_alert(7, 30, NOW - timedelta(hours=3), now=NOW)

    def test_between_milestones(self):
        assert not should_send_ssl_alert(20, 30, NOW - timedelta(days=5), now=NOW)

    def test_expired_milestone(self):
        assert should_send_ssl_alert(-1, 30, NOW - timedelta(days=2), now=NOW)
