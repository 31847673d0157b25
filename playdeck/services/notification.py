from typing import Optional
from urllib.parse import quote, urlencode
import logging

import apprise
import httpx

from playdeck.core.config import Settings, get_settings
from playdeck.models import Form, Run, utcnow

logger = logging.getLogger(__name__)


class NotificationService:
    """Post-run notifications configured per form (webhook and/or email).

    Delivery is best effort: failures are logged and never change a run's
    outcome.
    """
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _email_url(self, to: str) -> Optional[str]:
        s = self.settings
        if not s.SMTP_HOST:
            return None
        recipients = ",".join(addr.strip() for addr in to.split(",") if addr.strip())
        sender = s.SMTP_FROM or s.SMTP_USERNAME or f"playdeck@{s.SMTP_HOST}"
        auth = ""
        if s.SMTP_USERNAME:
            auth = quote(s.SMTP_USERNAME, safe="") + ":" + quote(s.SMTP_PASSWORD or "", safe="") + "@"
        query = urlencode({"smtp": s.SMTP_HOST, "from": sender, "to": recipients})
        return f"mailtos://{auth}{s.SMTP_HOST}:{s.SMTP_PORT}?{query}"

    async def send_webhook(self, url: str, payload: dict) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.settings.NOTIFY_TIMEOUT_SECONDS) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook to {url} failed: {e}")
            return False
        if response.status_code >= 400:
            logger.warning(f"Webhook to {url} returned HTTP {response.status_code}")
            return False
        return True

    async def send_email(self, to: str, title: str, body: str) -> bool:
        url = self._email_url(to)
        if not url:
            logger.info(f"SMTP host not configured, skipping email to {to}")
            return False
        apobj = apprise.Apprise()
        if not apobj.add(url):
            logger.warning(f"Could not build email notifier for {to}")
            return False
        ok = await apobj.async_notify(body=body, title=title)
        if not ok:
            logger.warning(f"Email to {to} failed")
        return bool(ok)

    async def _dispatch(self, form: Form, payload: dict, title: str, body: str) -> None:
        if form.notify_webhook:
            await self.send_webhook(form.notify_webhook, payload)
        if form.notify_email:
            await self.send_email(form.notify_email, title, body)

    async def send_run_notification(self, form: Form, run: Run) -> None:
        """Notifies a form's targets that one run reached a terminal status."""
        if not (form.notify_webhook or form.notify_email):
            return
        emoji = "✅" if run.status == "success" else "🚨"
        duration = "Unknown"
        if run.started_at and run.finished_at:
            duration = str(run.finished_at - run.started_at).split(".")[0]  # Remove microseconds
        payload = {
            "run_id": run.id,
            "batch_id": run.batch_id,
            "status": run.status,
            "form_name": form.name,
            "time": utcnow().strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        body = (
            f"{emoji} Form: {form.name}\n"
            f"Run ID: {run.id}\n"
            f"Status: {run.status.upper()}\n"
            f"Duration: {duration}\n"
            f"Exit Code: {run.exit_code}"
        )
        await self._dispatch(form, payload, f"[Playdeck] {form.name}: {run.status}", body)

    async def send_batch_notification(self, form: Form, batch_id: str, status: str, run_ids: list[str]) -> None:
        """Notifies a form's targets once the whole batch has finished."""
        if not (form.notify_webhook or form.notify_email):
            return
        payload = {
            "batch_id": batch_id,
            "run_ids": run_ids,
            "status": status,
            "form_name": form.name,
            "time": utcnow().strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        body = (
            f"Form: {form.name}\n"
            f"Batch ID: {batch_id}\n"
            f"Runs: {len(run_ids)}\n"
            f"Status: {status.upper()}"
        )
        await self._dispatch(form, payload, f"[Playdeck] {form.name}: batch {status}", body)
