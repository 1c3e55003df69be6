"""Email the candidate when an application reaches a final or manual state."""
from __future__ import annotations

import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from autoapply.config import get_env
from autoapply.log import get_logger
from autoapply.models import ApplicationState, CandidateProfile, JobPosting
from autoapply.retry import retry

log = get_logger(__name__)


@dataclass(frozen=True)
class SmtpConfig:
    host: str = ""
    port: int = 587
    user: str = ""
    password: str = ""
    from_addr: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.from_addr)

    @classmethod
    def from_env(cls) -> "SmtpConfig":
        try:
            port = int(get_env("SMTP_PORT", "587"))
        except ValueError:
            port = 587
        user = get_env("SMTP_USER")
        return cls(
            host=get_env("SMTP_HOST"),
            port=port,
            user=user,
            password=get_env("SMTP_PASSWORD"),
            from_addr=get_env("FROM_EMAIL", user),
        )


def format_subject(status: ApplicationState, title: str = "", company: str = "") -> str:
    role = f" {title}" if title else ""
    org = f" @ {company}" if company else ""
    if status is ApplicationState.APPLIED:
        return f"Applied{role}{org}"
    if status is ApplicationState.MANUAL_INTERVENTION:
        return f"Manual review needed{role}{org}"
    if status is ApplicationState.FAILED:
        return f"Application failed{role}{org}"
    return f"Application update{role}{org}"


def format_body(status: ApplicationState, title: str = "", company: str = "",
                job_url: str = "", error: str = "") -> str:
    lines = [f"Status: {status.value}"]
    if title:
        lines.append(f"Role: {title}")
    if company:
        lines.append(f"Company: {company}")
    if job_url:
        lines.append(f"Link: {job_url}")
    if error:
        lines.append(f"Reason: {error}")
    if status is ApplicationState.MANUAL_INTERVENTION:
        lines.append("")
        lines.append("The application window was left open so you can finish it yourself.")
    lines.append("")
    lines.append("Sent by autoapply.")
    return "\n".join(lines)


@retry(max_attempts=3, base_delay=3.0, retryable=(smtplib.SMTPException, OSError))
def _smtp_send(config: SmtpConfig, to_addr: str, msg: MIMEMultipart) -> None:
    with smtplib.SMTP(config.host, config.port, timeout=30) as server:
        server.starttls()
        if config.user:
            server.login(config.user, config.password)
        server.sendmail(config.from_addr, [to_addr], msg.as_string())


class Notifier:
    def __init__(self, config: SmtpConfig | None = None) -> None:
        self.config = config or SmtpConfig.from_env()

    def notify(
        self,
        profile: CandidateProfile,
        posting: JobPosting | None,
        status: ApplicationState,
        error: str = "",
    ) -> tuple[bool, str]:
        """Best effort; never raises."""
        if not self.config.enabled:
            return False, "SMTP not configured (set SMTP_HOST and FROM_EMAIL in .env)"
        if not profile.email:
            return False, f"No email address for {profile.user_id}"

        title = posting.title if posting else ""
        company = posting.company if posting else ""
        job_url = posting.job_url if posting else ""

        msg = MIMEMultipart("alternative")
        msg["Subject"] = format_subject(status, title, company)
        msg["From"] = self.config.from_addr
        msg["To"] = profile.email
        msg.attach(MIMEText(format_body(status, title, company, job_url, error), "plain", "utf-8"))

        try:
            _smtp_send(self.config, profile.email, msg)
            log.info("Notification sent to %s (%s)", profile.email, status.value)
            return True, "Email sent"
        except Exception as e:
            log.error("Notification failed: %s", e)
            return False, str(e)[:150]
