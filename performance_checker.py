"""
MonitHQ - Performance Monitoring
Times a full GET of a site (connect, TLS, first byte, download), scores it,
and lists issues and recommendations. Results go to the performance_checks
table; trends compare the most recent checks.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

import httpx
import pandas as pd

from constants import PROBE_USER_AGENT, get_response_time_range

logger = logging.getLogger(__name__)

PERFORMANCE_TIMEOUT_SECONDS = 30
COMPRESSED_ENCODINGS = ("gzip", "br", "deflate", "zstd")

# Trace events (httpcore) that bound each connection phase
PHASE_EVENTS = {
    "tcp": ("connection.connect_tcp.started", "connection.connect_tcp.complete"),
    "tls": ("connection.start_tls.started", "connection.start_tls.complete"),
}

SCRIPT_RE = re.compile(r"<script[^>]*\ssrc=[\"'][^\"']+[\"']", re.IGNORECASE)
LINK_RE = re.compile(r"<link[^>]*\shref=[\"'][^\"']+[\"'][^>]*>", re.IGNORECASE)
IMG_RE = re.compile(r"<img[^>]*\ssrc=[\"'][^\"']+[\"']", re.IGNORECASE)

# Rough transfer size per resource in KB
RESOURCE_SIZE_KB = {"scripts": 50, "stylesheets": 30, "images": 100, "fonts": 40}


def normalize_url(url: str) -> str:
    url = (url or "").strip()
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url


async def measure_performance(url: str, timeout: float = PERFORMANCE_TIMEOUT_SECONDS,
                              transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """
    GET the URL and time each phase.

    Connect and TLS times come from httpx's trace extension and are None when
    the connection was not traced (reused or in-process transports).
    """
    loop = asyncio.get_running_loop()
    marks = {}

    async def trace(event_name, info):
        marks.setdefault(event_name, loop.time())

    start = loop.time()
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=timeout,
        transport=transport,
        headers={"User-Agent": PROBE_USER_AGENT},
    ) as client:
        async with client.stream("GET", url, extensions={"trace": trace}) as response:
            first_byte = loop.time()
            body = await response.aread()
        end = loop.time()

    def phase(name):
        began, done = PHASE_EVENTS[name]
        if began in marks and done in marks:
            return int((marks[done] - marks[began]) * 1000)
        return None

    ttfb = int((first_byte - start) * 1000)
    download_time = int((end - first_byte) * 1000)
    size = len(body)
    encoding = response.headers.get("content-encoding", "").lower()

    return {
        "total_time": int((end - start) * 1000),
        "tcp_time": phase("tcp"),
        "tls_time": phase("tls") if urlsplit(str(response.url)).scheme == "https" else 0,
        "ttfb": ttfb,
        "download_time": download_time,
        "response_size": size,
        "transfer_speed": round((size / 1024) / (download_time / 1000), 2) if download_time > 0 else 0,
        "compression": any(e in encoding for e in COMPRESSED_ENCODINGS),
        "status_code": response.status_code,
        "redirect_count": len(response.history),
        "final_url": str(response.url),
        "html": response.text if "html" in response.headers.get("content-type", "") else "",
    }


def analyze_resources(html: str) -> dict:
    """Count referenced resources and estimate paint timings from them."""
    links = LINK_RE.findall(html or "")
    breakdown = {
        "scripts": len(SCRIPT_RE.findall(html or "")),
        "stylesheets": sum(1 for link in links if "stylesheet" in link.lower()),
        "images": len(IMG_RE.findall(html or "")),
        "fonts": sum(1 for link in links if "font" in link.lower()),
    }

    # Stylesheets and the first few scripts block the first paint
    critical = breakdown["stylesheets"] + min(breakdown["scripts"], 3)
    estimated_fcp = 500 + critical * 100
    estimated_lcp = estimated_fcp + 200 + (300 if breakdown["images"] else 0)

    sizes = {k: breakdown[k] * RESOURCE_SIZE_KB[k] for k in RESOURCE_SIZE_KB}
    sizes["total"] = sum(sizes.values())

    return {
        "resource_count": sum(breakdown.values()),
        "resource_breakdown": breakdown,
        "resource_sizes": sizes,
        "estimated_fcp": estimated_fcp,
        "estimated_lcp": estimated_lcp,
    }


def calculate_performance_score(data: dict):
    """Score out of 100 and a letter grade."""
    score = 100

    ttfb = data.get("ttfb") or data.get("total_time") or 0
    for limit, penalty in ((1800, 40), (1200, 30), (600, 20), (300, 10)):
        if ttfb > limit:
            score -= penalty
            break

    download = data.get("download_time") or 0
    for limit, penalty in ((2000, 30), (1500, 20), (1000, 15), (500, 10)):
        if download > limit:
            score -= penalty
            break

    if not data.get("compression"):
        score -= 10

    redirects = data.get("redirect_count") or 0
    if redirects > 2:
        score -= 10
    elif redirects > 0:
        score -= 5

    size = data.get("response_size") or 0
    if size > 500 * 1024:
        score -= 10
    elif size > 200 * 1024:
        score -= 5

    score = max(0, min(100, score))
    for floor, grade in ((90, "A"), (80, "B"), (70, "C"), (60, "D")):
        if score >= floor:
            return score, grade
    return score, "F"


def detect_performance_issues(data: dict, resources: dict) -> list:
    issues = []

    ttfb = data.get("ttfb") or data.get("total_time") or 0
    if ttfb > 1200:
        issues.append({
            "severity": "high",
            "type": "slow_ttfb",
            "message": f"Slow Time to First Byte ({ttfb}ms). Server response time should be under 600ms.",
        })
    elif ttfb > 600:
        issues.append({
            "severity": "medium",
            "type": "slow_ttfb",
            "message": f"Moderate Time to First Byte ({ttfb}ms). Consider optimizing server response time.",
        })

    if data.get("response_size", 0) > 500 * 1024:
        issues.append({
            "severity": "high",
            "type": "large_response",
            "message": f"Large response size ({data['response_size'] // 1024}KB). "
                       f"Consider minification and code splitting.",
        })

    if not data.get("compression"):
        issues.append({
            "severity": "medium",
            "type": "no_compression",
            "message": "Response is not compressed. Enable gzip or Brotli compression.",
        })

    if data.get("redirect_count", 0) > 1:
        issues.append({
            "severity": "medium",
            "type": "multiple_redirects",
            "message": f"Multiple redirects detected ({data['redirect_count']}). Minimize redirect chains.",
        })

    if data.get("download_time", 0) > 2000:
        issues.append({
            "severity": "high",
            "type": "slow_download",
            "message": f"Slow content download ({data['download_time']}ms). Check network connectivity or CDN.",
        })

    if resources["resource_count"] > 100:
        issues.append({
            "severity": "medium",
            "type": "many_resources",
            "message": f"High resource count ({resources['resource_count']}). Consider resource consolidation.",
        })

    if (resources.get("estimated_lcp") or 0) > 2500:
        issues.append({
            "severity": "high",
            "type": "slow_lcp",
            "message": f"Slow Largest Contentful Paint (~{resources['estimated_lcp']}ms). "
                       f"Optimize critical rendering path.",
        })

    return issues


def generate_recommendations(data: dict, resources: dict, issues: list) -> list:
    found = {i["type"] for i in issues}
    recommendations = []

    if "slow_ttfb" in found:
        recommendations.append({
            "priority": "high",
            "category": "server",
            "title": "Optimize Server Response Time",
            "description": "Use server-side caching, optimize database queries, or consider a CDN.",
        })
    if "no_compression" in found:
        recommendations.append({
            "priority": "high",
            "category": "compression",
            "title": "Enable Compression",
            "description": "Configure your server to use gzip or Brotli compression for text-based resources.",
        })
    if "multiple_redirects" in found:
        recommendations.append({
            "priority": "medium",
            "category": "redirects",
            "title": "Minimize Redirects",
            "description": "Reduce redirect chains by updating links to point directly to final URLs.",
        })
    if resources["resource_count"] > 50:
        recommendations.append({
            "priority": "medium",
            "category": "resources",
            "title": "Optimize Resource Loading",
            "description": "Bundle and minify CSS/JS files, lazy load images, and split code.",
        })
    if resources["resource_breakdown"].get("images", 0) > 10:
        recommendations.append({
            "priority": "medium",
            "category": "images",
            "title": "Optimize Images",
            "description": "Use modern image formats (WebP, AVIF) and lazy load below-the-fold images.",
        })
    if data.get("ttfb", 0) > 800 or data.get("download_time", 0) > 1500:
        recommendations.append({
            "priority": "high",
            "category": "cdn",
            "title": "Use a Content Delivery Network",
            "description": "Serve static assets from a CDN to reduce latency for distant visitors.",
        })

    recommendations.append({
        "priority": "low",
        "category": "caching",
        "title": "Implement Browser Caching",
        "description": "Set cache headers on static resources so repeat visits load faster.",
    })
    return recommendations


async def perform_performance_check(url: str, timeout: float = PERFORMANCE_TIMEOUT_SECONDS,
                                    transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """Measure, analyze and score one URL. Failures come back with success False."""
    url = normalize_url(url)
    loop = asyncio.get_running_loop()
    start = loop.time()

    try:
        data = await measure_performance(url, timeout, transport)
    except httpx.TimeoutException:
        return _failed(url, start, loop, f"Timeout after {timeout}s")
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return _failed(url, start, loop, f"Performance measurement failed: {str(e)[:200] or type(e).__name__}")

    resources = analyze_resources(data.pop("html"))
    score, grade = calculate_performance_score(data)
    issues = detect_performance_issues(data, resources)

    return {
        "url": url,
        **data,
        "speed": get_response_time_range(data["ttfb"]),
        "estimated_fcp": resources["estimated_fcp"],
        "estimated_lcp": resources["estimated_lcp"],
        "resource_count": resources["resource_count"],
        "resource_sizes": resources["resource_sizes"],
        "performance_score": score,
        "grade": grade,
        "issues": issues,
        "recommendations": generate_recommendations(data, resources, issues),
        "success": True,
        "error_message": None,
    }


def _failed(url: str, start: float, loop, message: str) -> dict:
    logger.warning(f"Performance check failed for {url}: {message}")
    return {
        "url": url,
        "total_time": int((loop.time() - start) * 1000),
        "success": False,
        "error_message": message,
    }


def get_performance_statistics(check: dict) -> dict:
    issues = check.get("issues") or []
    return {
        "performance_score": check.get("performance_score"),
        "grade": check.get("grade"),
        "total_time": check.get("total_time"),
        "ttfb": check.get("ttfb"),
        "speed": get_response_time_range(check["ttfb"]) if check.get("ttfb") is not None else None,
        "download_time": check.get("download_time"),
        "response_size": check.get("response_size"),
        "compression": check.get("compression"),
        "issue_count": len(issues),
        "recommendation_count": len(check.get("recommendations") or []),
        "high_severity_issues": sum(1 for i in issues if i.get("severity") == "high"),
    }


def analyze_performance_trend(checks: list) -> dict:
    """
    Compare the newest check with the one before it.

    `checks` is newest first. A score move of more than 5 points either way is
    a trend; anything smaller is stable.
    """
    if not checks or len(checks) < 2:
        return {"trend": "stable", "score_change": 0, "ttfb_change": 0}

    df = pd.DataFrame(checks, columns=["performance_score", "ttfb"]).fillna(0)
    score_change = float(df["performance_score"].iloc[0] - df["performance_score"].iloc[1])
    ttfb_change = float(df["ttfb"].iloc[0] - df["ttfb"].iloc[1])

    if score_change > 5:
        trend = "improving"
    elif score_change < -5:
        trend = "degrading"
    else:
        trend = "stable"

    return {
        "trend": trend,
        "score_change": score_change,
        "ttfb_change": ttfb_change,
        "average_score": round(float(df["performance_score"].mean()), 2),
        "average_ttfb": round(float(df["ttfb"].mean()), 2),
    }


PERFORMANCE_COLUMNS = (
    "total_time", "tcp_time", "tls_time", "ttfb", "download_time", "response_size",
    "transfer_speed", "compression", "status_code", "redirect_count", "estimated_fcp",
    "estimated_lcp", "resource_count", "resource_sizes", "performance_score", "grade",
    "issues", "recommendations", "success", "error_message",
)


def run_performance_check(supabase, site: dict, timeout: float = PERFORMANCE_TIMEOUT_SECONDS,
                          transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """Check a site's performance and store the result."""
    results = asyncio.run(perform_performance_check(site["url"], timeout, transport))

    row = {"site_id": site["id"], "checked_at": datetime.now(timezone.utc).isoformat()}
    row.update({k: results.get(k) for k in PERFORMANCE_COLUMNS})
    inserted = supabase.table("performance_checks").insert(row).execute()

    if results["success"]:
        logger.info(f"Performance check for {site.get('name')}: {results['grade']} "
                    f"({results['performance_score']}), TTFB {results['ttfb']}ms")

    return {
        "check": (inserted.data or [row])[0],
        "statistics": get_performance_statistics(results) if results["success"] else None,
    }


def list_performance_checks(supabase, site_id: str, limit: int = 10) -> dict:
    """Recent performance checks with statistics for the newest and the trend."""
    checks = supabase.table("performance_checks")\
        .select("*")\
        .eq("site_id", site_id)\
        .order("checked_at", desc=True)\
        .limit(limit)\
        .execute().data or []

    latest = checks[0] if checks else None
    return {
        "checks": checks,
        "latest": latest,
        "statistics": get_performance_statistics(latest) if latest else None,
        "trend": analyze_performance_trend(checks),
        "count": len(checks),
    }
