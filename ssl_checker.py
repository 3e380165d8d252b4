"""
MonitHQ - SSL Certificate Checks
Handshakes with a site's HTTPS endpoint and reports certificate validity,
expiry and alert milestones. Certificates that fail verification are still
read so expired or self-signed ones report their dates.
"""

import asyncio
import hashlib
import math
import ssl
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.x509.oid import NameOID

from constants import SSL_ALERT_THRESHOLD_DAYS, SSL_ALERT_MILESTONES


def _host_port_from_url(url: str):
    try:
        parts = urlsplit((url or "").strip())
        port = parts.port
    except ValueError:
        return None
    if (parts.scheme or "").lower() != "https" or not parts.hostname:
        return None
    return parts.hostname, int(port or 443)


def _name_field(name: x509.Name, oid) -> Optional[str]:
    attrs = name.get_attributes_for_oid(oid)
    return str(attrs[0].value) if attrs else None


def _serial_hex(serial: int) -> str:
    text = format(serial, "X")
    return text if len(text) % 2 == 0 else "0" + text


def parse_certificate(der: bytes, hostname: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Summarize a DER certificate; valid means now is inside its validity window."""
    now = now or datetime.now(timezone.utc)
    cert = x509.load_der_x509_certificate(der)
    valid_from = cert.not_valid_before_utc
    valid_to = cert.not_valid_after_utc

    return {
        "valid": valid_from <= now <= valid_to,
        "is_https": True,
        "issuer": _name_field(cert.issuer, NameOID.ORGANIZATION_NAME)
        or _name_field(cert.issuer, NameOID.COMMON_NAME) or "Unknown",
        "subject": _name_field(cert.subject, NameOID.COMMON_NAME) or hostname,
        "valid_from": valid_from.isoformat(),
        "valid_to": valid_to.isoformat(),
        "days_remaining": math.floor((valid_to - now).total_seconds() / 86400),
        "serial_number": _serial_hex(cert.serial_number),
        "fingerprint": hashlib.sha256(der).hexdigest().upper(),
        "authorized": None,
        "error": None,
    }


def _reading_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


async def _handshake(host: str, port: int, ctx: ssl.SSLContext, timeout: float) -> Optional[bytes]:
    """TLS handshake; returns the peer certificate in DER form."""
    writer = None
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host=host, port=port, ssl=ctx, server_hostname=host),
            timeout=timeout,
        )
        sslobj = writer.get_extra_info("ssl_object")
        return sslobj.getpeercert(binary_form=True) if sslobj else None
    finally:
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ssl.SSLError, OSError):
                pass


async def _verify(host: str, port: int, timeout: float) -> Tuple[bool, Optional[str]]:
    """Whether the chain and hostname verify against the system trust store."""
    try:
        await _handshake(host, port, ssl.create_default_context(), timeout)
        return True, None
    except ssl.SSLCertVerificationError as e:
        return False, e.verify_message or str(e)
    except asyncio.TimeoutError:
        return False, "SSL verification timeout"
    except (ssl.SSLError, OSError) as e:
        return False, str(e) or type(e).__name__


async def check_ssl_certificate(url: str, timeout: float = 10) -> Dict[str, Any]:
    """
    Check the SSL certificate served for a URL.

    Returns a dict with valid, is_https and, when a certificate was served,
    issuer, subject, valid_from, valid_to, days_remaining, serial_number,
    fingerprint and authorized (the chain and hostname verified). Failures are
    reported in the "error" key, never raised.
    """
    target = _host_port_from_url(url)
    if target is None:
        return {"valid": False, "is_https": False, "error": "Not an HTTPS URL"}
    host, port = target

    try:
        der = await _handshake(host, port, _reading_context(), timeout)
    except asyncio.TimeoutError:
        return {"valid": False, "is_https": True, "error": "SSL check timeout"}
    except (ssl.SSLError, OSError) as e:
        return {"valid": False, "is_https": True, "error": str(e) or type(e).__name__}

    if not der:
        return {"valid": False, "is_https": True, "error": "No certificate found"}
    try:
        info = parse_certificate(der, host)
    except ValueError as e:
        return {"valid": False, "is_https": True, "error": f"Unreadable certificate: {e}"}

    info["authorized"], info["error"] = await _verify(host, port, timeout)
    return info


def run_ssl_check(url: str, timeout: float = 10) -> Dict[str, Any]:
    """Synchronous wrapper for check_ssl_certificate."""
    return asyncio.run(check_ssl_certificate(url, timeout))


def get_ssl_status_color(days_remaining: int) -> str:
    if days_remaining < 7:
        return "red"
    if days_remaining < 14:
        return "orange"
    if days_remaining < 30:
        return "yellow"
    return "green"


def get_ssl_status_text(days_remaining: int) -> str:
    if days_remaining < 0:
        return "Expired"
    if days_remaining < 7:
        return "Expires Soon"
    if days_remaining < 14:
        return "Expiring"
    if days_remaining < 30:
        return "Attention Needed"
    return "Valid"


def should_send_ssl_alert(days_remaining: int,
                          alert_threshold: int = SSL_ALERT_THRESHOLD_DAYS,
                          last_alert_at: Optional[datetime] = None,
                          now: Optional[datetime] = None) -> bool:
    """
    Decide whether an expiry alert is due.

    Nothing is sent beyond the threshold. The first alert inside the threshold
    always goes out; after that only milestone days alert, at most once a day.
    """
    if days_remaining > alert_threshold:
        return False

    if last_alert_at is None:
        return True

    now = now or datetime.now(timezone.utc)
    for milestone in SSL_ALERT_MILESTONES:
        if milestone - 1 < days_remaining <= milestone:
            days_since_last = math.floor((now - last_alert_at).total_seconds() / 86400)
            return days_since_last >= 1

    return False


def format_ssl_info(ssl_info: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Display summary of a certificate check."""
    if not ssl_info or ssl_info.get("days_remaining") is None:
        return {
            "status": "Invalid",
            "status_color": "red",
            "message": (ssl_info or {}).get("error") or "No SSL certificate found",
        }

    days = ssl_info["days_remaining"]
    if days < 0:
        message = f"Expired {-days} days ago"
    else:
        message = f"{days} days remaining"
    if ssl_info.get("authorized") is False and ssl_info.get("error"):
        message += f" ({ssl_info['error']})"

    # A certificate outside its window with days left has not started yet
    not_started = not ssl_info.get("valid") and days >= 0
    return {
        "status": "Not Yet Valid" if not_started else get_ssl_status_text(days),
        "status_color": "red" if not_started else get_ssl_status_color(days),
        "authorized": ssl_info.get("authorized"),
        "issuer": ssl_info.get("issuer"),
        "valid_from": ssl_info.get("valid_from"),
        "valid_to": ssl_info.get("valid_to"),
        "days_remaining": days,
        "subject": ssl_info.get("subject"),
        "message": message,
    }
