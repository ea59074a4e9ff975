# email_client.py
import html
import logging
from typing import Iterable, Optional

import httpx

from models import JobStatus
from settings import Settings

logger = logging.getLogger(__name__)

RESEND_API_BASE = "https://api.resend.com"


class ResendEmailSender:
    """Best-effort transactional email. Failures are logged, never raised."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = settings.resend_api_key
        self.sender = settings.email_from
        self._transport = transport

    async def send(self, to: str, subject: str, body_html: str) -> bool:
        if not self.api_key:
            logger.info("RESEND_API_KEY missing, skipping email to %s", to)
            return False
        try:
            async with httpx.AsyncClient(
                base_url=RESEND_API_BASE,
                timeout=httpx.Timeout(15.0, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            ) as client:
                r = await client.post("/emails", json={"from": self.sender, "to": [to], "subject": subject, "html": body_html})
            if r.status_code >= 300:
                logger.error("Email to %s rejected: %s %s", to, r.status_code, r.text)
                return False
            return True
        except httpx.HTTPError as e:
            logger.error("Failed to send email to %s: %s", to, e)
            return False


# ---------- Templates ----------

def _button(url: str, text: str) -> str:
    return (
        f'<a href="{html.escape(url)}" style="background:#3B82F6;color:#fff;padding:12px 24px;'
        f'text-decoration:none;border-radius:6px;display:inline-block;">{html.escape(text)}</a>'
    )


def free_pack_ready_email(app_url: str, job_id: str, items: Iterable) -> tuple:
    rows = "".join(f"<li>{html.escape(i.emoji)} {html.escape(i.label)}</li>" for i in items)
    body = f"""
        <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
          <h1>Your expressions are ready!</h1>
          <p>We trained AI on your face and generated these expressions:</p>
          <ul>{rows}</ul>
          <p>{_button(f"{app_url}/view/{job_id}", "View Your Expressions")}</p>
          <p style="color: #666; font-size: 14px; margin-top: 40px;">
            Want all 12 expressions? Unlock the full pack on the view page.
          </p>
        </div>
    """
    return "Your Free Expressions Are Ready!", body


def payment_receipt_email(app_url: str, job_id: str, amount: str) -> tuple:
    body = f"""
        <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
          <h1>Thank you for your purchase!</h1>
          <p>We received your payment of {html.escape(amount)}.</p>
          <p>Your full expression pack is being generated and will appear on your page shortly.</p>
          <p>{_button(f"{app_url}/view/{job_id}", "View Full Pack")}</p>
        </div>
    """
    return "Payment Successful! Your Full Pack is Unlocked", body


def recovery_email(app_url: str, jobs: Iterable) -> tuple:
    links = []
    for job in jobs:
        state = "Ready" if job.status == JobStatus.COMPLETE else "Processing"
        url = html.escape(f"{app_url}/view/{job.id}")
        links.append(f'<li><a href="{url}">Order from {job.created_at:%Y-%m-%d} ({state})</a></li>')
    body = f"""
        <h1>Your Order History</h1>
        <p>Here are the links to your expression packs:</p>
        <ul>{"".join(links)}</ul>
        <p>Click any link above to view and download your photos.</p>
    """
    return "Here are your expression packs", body
