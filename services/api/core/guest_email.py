# services/api/core/guest_email.py
"""Notification email for a freshly issued guest viewing link."""
from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Dict, List

from core.email_sender import InlineImage, OutgoingEmail

BRAND = "Therapy Tools"


def _page_list(pages: List[int]) -> str:
    return ", ".join(str(p) for p in sorted(pages))


def build_guest_email(
    *,
    recipient: str,
    document_name: str,
    selected_pages: List[int],
    viewing_url: str,
    expires_at: datetime,
    ttl_days: int = 7,
    page_images: Dict[int, bytes] | None = None,
) -> OutgoingEmail:
    name = document_name or "Document"
    pages = _page_list(selected_pages)
    expiry = expires_at.strftime("%B %d, %Y").replace(" 0", " ")

    images: List[InlineImage] = []
    for page in sorted(page_images or {}):
        images.append(InlineImage(content_id=f"page-{page}", filename=f"page-{page}.png", data=page_images[page]))

    text = (
        f"Hello!\n\n"
        f"Here are the pages you selected from \"{name}\".\n"
        f"Pages: {pages}\n\n"
        f"View your selected pages online for the next {ttl_days} days:\n"
        f"{viewing_url}\n\n"
        f"This secure link will expire on {expiry}.\n\n"
        f"- {BRAND} Team\n"
    )

    safe_url = escape(viewing_url, quote=True)
    previews = "".join(
        f'<p style="margin: 20px 0 5px 0; color: #4B5563; font-size: 14px;">Page {page}</p>'
        f'<img src="cid:page-{page}" alt="Page {page}" '
        f'style="max-width: 100%; border: 1px solid #E5E7EB; border-radius: 4px;">'
        for page in sorted(page_images or {})
    )

    html = f"""<!DOCTYPE html>
<html>
<head>
  <meta http-equiv="Content-Type" content="text/html; charset=utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Your Selected PDF Pages</title>
</head>
<body style="font-family: Arial, 'Helvetica Neue', Helvetica, sans-serif; margin: 0; padding: 0; background-color: #f8f9fa;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px; background-color: #ffffff; border-radius: 8px;">
    <h1 style="color: #4F46E5; margin-top: 0; font-size: 24px;">Your Selected PDF Pages</h1>
    <p style="color: #333333; font-size: 16px;">Here are the pages you selected from <strong>"{escape(name)}"</strong>:</p>
    <p style="color: #333333; font-size: 16px;"><strong>Pages:</strong> {pages}</p>
    <div style="background-color: #F3F4FD; border: 1px solid #D4D7FF; border-radius: 8px; padding: 20px; text-align: center;">
      <h2 style="color: #4F46E5; margin-top: 0; font-size: 20px;">View Your Selected Pages Online</h2>
      <p style="color: #374151;"><strong>&#10003; Access anytime for the next {ttl_days} days</strong></p>
      <a href="{safe_url}" target="_blank" style="display: inline-block; padding: 14px 28px; background-color: #4F46E5; color: #ffffff; font-weight: bold; text-decoration: none; border-radius: 6px;">View Pages Online</a>
      <p style="color: #6B7280; font-size: 13px; font-style: italic;">This secure link will expire on {expiry}</p>
      <p style="color: #4B5563; font-size: 14px;">If the button doesn't work, copy and paste this link into your browser:<br>
        <a href="{safe_url}" style="color: #4F46E5; word-break: break-all;">{safe_url}</a></p>
    </div>
    {previews}
    <p style="color: #333333;">- {BRAND} Team</p>
  </div>
</body>
</html>
"""

    return OutgoingEmail(
        to=recipient,
        subject=f"Selected Pages from {name}",
        text=text,
        html=html,
        images=images,
    )
