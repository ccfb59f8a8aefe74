# services/api/routers/proxy.py
"""
Self-hosted PDF proxy. Listed first in the viewer's proxy rotation when
SELF_HOSTED_PROXY_URL points here, ahead of the public CORS proxies.
"""
from __future__ import annotations

import logging
import urllib.parse

import httpx
from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])


def google_drive_download_url(url: str) -> str:
    """
    Convert a Google Drive share link to its direct-download form.
    Non-Drive URLs are returned unchanged.
    """
    if "drive.google.com" not in url:
        return url

    if "/folders/" in url:
        # User provided a folder URL instead of a file URL
        raise HTTPException(
            status_code=400,
            detail="❌ This is a Google Drive FOLDER URL. Please provide a FILE URL instead. Right-click the file → 'Get link' → Use that URL."
        )
    if "/file/d/" in url:
        file_id = url.split("/file/d/")[1].split("/")[0].split("?")[0]
    elif "id=" in url:
        query = urllib.parse.parse_qs(urllib.parse.urlsplit(url).query)
        file_id = (query.get("id") or [url.split("id=")[1].split("&")[0]])[0]
    else:
        raise HTTPException(status_code=400, detail="Invalid Google Drive URL format. Please use a direct file link.")

    return f"https://drive.google.com/uc?export=download&id={file_id}"


@router.get("/proxy-pdf")
async def proxy_pdf(url: str):
    """
    Proxy PDF files to avoid CORS issues.
    Supports Google Drive share links and any directly reachable PDF URL.
    """
    target = google_drive_download_url(url)
    if target != url:
        logger.info(f"[proxy-pdf] Converted Google Drive URL to: {target}")

    try:
        async with httpx.AsyncClient(timeout=get_settings().fetch_timeout, follow_redirects=True) as client:
            response = await client.get(target)
    except httpx.TimeoutException:
        logger.error(f"[proxy-pdf] Timeout fetching PDF: {target}")
        raise HTTPException(status_code=504, detail="PDF fetch timeout")
    except httpx.RequestError as e:
        logger.error(f"[proxy-pdf] Error fetching PDF: {str(e)}")
        raise HTTPException(status_code=502, detail=f"Failed to fetch PDF: {str(e)}")

    if response.status_code != 200:
        logger.error(f"[proxy-pdf] Failed to fetch PDF: {response.status_code}")
        raise HTTPException(
            status_code=response.status_code,
            detail=f"Failed to fetch PDF: HTTP {response.status_code}"
        )

    content_type = response.headers.get("content-type", "")
    if "pdf" not in content_type.lower() and "octet-stream" not in content_type.lower():
        # Still serve it, might be a PDF without correct headers
        logger.warning(f"[proxy-pdf] URL returned non-PDF content: {content_type}")

    logger.info(f"[proxy-pdf] Successfully proxied PDF from {target} ({len(response.content)} bytes)")
    return Response(
        content=response.content,
        media_type="application/pdf",
        headers={
            "Access-Control-Allow-Origin": "*",
            "Cache-Control": "public, max-age=3600",
        }
    )
