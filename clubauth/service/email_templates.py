"""HTML and text bodies for transactional email.

Every message shares one frame: a header carrying the logo as a base64 data
URI, the body, and a footer with an optional "questions" block and an
optional "this is an automatic email" block. Styles are inlined because most
mail clients drop ``<style>`` elements.
"""

from __future__ import annotations

import base64
import html
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from clubauth.logging import get_logger

logger = get_logger(__name__)

PLAN_NAMES = {
    "basic": "Basispakke (250 kr/måned)",
    "professional": "Professionel (400 kr/måned)",
}

_BUTTON_STYLE = (
    "display: inline-block; padding: 12px 24px; background-color: #1f6feb; color: #ffffff; "
    "text-decoration: none; border-radius: 6px; font-weight: bold;"
)
_DIGIT_STYLE = (
    "display: inline-block; width: 40px; height: 48px; line-height: 48px; margin: 0 3px; "
    "text-align: center; font-size: 24px; font-weight: bold; font-family: 'Courier New', monospace; "
    "color: #111827; background-color: #f3f4f6; border: 2px solid #d1d5db; border-radius: 8px;"
)


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: str


class LinkBuilder:
    """Tenant-aware absolute links.

    Production links use the tenant's own subdomain; development links point
    at the local frontend and rely on its hash router.
    """

    def __init__(self, *, base_domain: str, dev_port: str, development: bool) -> None:
        self.base_domain = base_domain
        self.dev_port = dev_port
        self.development = development

    def url(self, tenant_id: str, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        if self.development:
            return f"http://localhost:{self.dev_port}/#/{tenant_id}{path}"
        return f"https://{tenant_id}.{self.base_domain}{path}"

    def marketing_url(self) -> str:
        if self.development:
            return f"http://localhost:{self.dev_port}/#/marketing"
        return f"https://{self.base_domain}"


@lru_cache(maxsize=8)
def load_logo_data_uri(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        logger.warning("email_logo_unreadable", path=path, error=str(exc))
        return None
    mime = "image/svg+xml" if path.endswith(".svg") else "image/png"
    return f"data:{mime};base64," + base64.b64encode(raw).decode("ascii")


class EmailComposer:
    def __init__(self, *, brand_name: str, links: LinkBuilder, logo_path: Optional[str] = None) -> None:
        self.brand_name = brand_name
        self.links = links
        self.logo_path = logo_path

    # -- frame ----------------------------------------------------------

    def _header(self) -> str:
        logo = load_logo_data_uri(self.logo_path)
        brand = html.escape(self.brand_name)
        if logo:
            mark = f'<img src="{logo}" alt="{brand}" style="max-height: 48px; max-width: 220px;" />'
        else:
            mark = f'<span style="font-size: 22px; font-weight: bold; color: #111827;">{brand}</span>'
        return (
            '<div style="padding: 24px; text-align: center; border-bottom: 1px solid #e5e7eb;">'
            f"{mark}</div>"
        )

    def _footer(self, *, questions: bool, automatic: bool) -> str:
        blocks = []
        if questions:
            blocks.append(
                '<p style="margin: 0 0 12px;">Har du spørgsmål? Svar på denne email, '
                "så vender vi tilbage hurtigst muligt.</p>"
            )
        if automatic:
            blocks.append(
                '<p style="margin: 0; color: #9ca3af;">Denne email er sendt automatisk. '
                f"© {html.escape(self.brand_name)}</p>"
            )
        if not blocks:
            return ""
        return (
            '<div style="padding: 20px 24px; border-top: 1px solid #e5e7eb; '
            'font-size: 13px; color: #6b7280;">' + "".join(blocks) + "</div>"
        )

    def frame(self, title: str, body: str, *, questions: bool = True, automatic: bool = True) -> str:
        return (
            "<!DOCTYPE html>"
            '<html><head><meta charset="utf-8">'
            f"<title>{html.escape(title)}</title></head>"
            '<body style="margin: 0; padding: 0; background-color: #f9fafb;">'
            '<div style="font-family: Arial, Helvetica, sans-serif; max-width: 600px; '
            'margin: 24px auto; background-color: #ffffff; border-radius: 8px; color: #1f2933;">'
            f"{self._header()}"
            f'<div style="padding: 24px; line-height: 1.6;">{body}</div>'
            f"{self._footer(questions=questions, automatic=automatic)}"
            "</div></body></html>"
        )

    @staticmethod
    def _button(url: str, label: str) -> str:
        return f'<p><a href="{html.escape(url)}" style="{_BUTTON_STYLE}">{html.escape(label)}</a></p>'

    @staticmethod
    def _fallback_link(url: str, prompt: str) -> str:
        return (
            f"<p>{html.escape(prompt)}</p>"
            f'<p style="word-break: break-all; color: #6b7280;">{html.escape(url)}</p>'
        )

    @staticmethod
    def pin_digits(pin: str) -> str:
        boxes = "".join(f'<span style="{_DIGIT_STYLE}">{html.escape(d)}</span>' for d in pin)
        return f'<div style="margin: 16px 0; white-space: nowrap;">{boxes}</div>'

    # -- templates ------------------------------------------------------

    def verification(self, tenant_id: str, token: str) -> RenderedEmail:
        url = self.links.url(tenant_id, f"/verify-email?token={token}")
        brand = html.escape(self.brand_name)
        body = (
            "<h1>Verify your email address</h1>"
            f"<p>Thank you for registering with {brand}!</p>"
            "<p>Please click the button below to verify your email address:</p>"
            f"{self._button(url, 'Verify Email')}"
            f"{self._fallback_link(url, 'Or copy and paste this URL into your browser:')}"
            "<p>This link will expire in 24 hours.</p>"
            "<p>If you didn't create an account, you can safely ignore this email.</p>"
        )
        text = (
            f"Thank you for registering with {self.brand_name}!\n\n"
            f"Verify your email address: {url}\n\nThis link will expire in 24 hours."
        )
        return RenderedEmail("Verify your email address", self.frame("Verify your email address", body), text)

    def password_reset(self, tenant_id: str, token: str) -> RenderedEmail:
        url = self.links.url(tenant_id, f"/reset-password?token={token}")
        brand = html.escape(self.brand_name)
        body = (
            "<h1>Reset your password</h1>"
            f"<p>You requested to reset your password for {brand}.</p>"
            "<p>Click the button below to choose a new password:</p>"
            f"{self._button(url, 'Reset Password')}"
            f"{self._fallback_link(url, 'Or copy and paste this URL into your browser:')}"
            "<p>This link will expire in 1 hour.</p>"
            "<p>If you didn't request a password reset, you can safely ignore this email.</p>"
        )
        text = f"Reset your password: {url}\n\nThis link will expire in 1 hour."
        return RenderedEmail("Reset your password", self.frame("Reset your password", body), text)

    def two_factor_enabled(self) -> RenderedEmail:
        brand = html.escape(self.brand_name)
        body = (
            "<h1>Two-factor authentication enabled</h1>"
            f"<p>Two-factor authentication has been enabled for your {brand} account.</p>"
            "<p>From now on you will need a code from your authenticator app when logging in.</p>"
            "<p>If you didn't enable two-factor authentication, please contact support immediately.</p>"
        )
        text = (
            f"Two-factor authentication has been enabled for your {self.brand_name} account. "
            "If this wasn't you, contact support immediately."
        )
        return RenderedEmail(
            "Two-factor authentication enabled",
            self.frame("Two-factor authentication enabled", body, questions=False),
            text,
        )

    def coach_welcome(self, tenant_id: str, username: str, pin: str) -> RenderedEmail:
        url = self.links.url(tenant_id, "/login")
        brand = html.escape(self.brand_name)
        name = html.escape(username)
        body = (
            f"<h1>Velkommen til {brand}!</h1>"
            f"<p>Hej {name},</p>"
            "<p>Din trænerkonto er blevet oprettet. Du kan nu logge ind med:</p>"
            f"<p><strong>Brugernavn:</strong> {name}</p>"
            "<p><strong>PIN:</strong></p>"
            f"{self.pin_digits(pin)}"
            f"{self._button(url, 'Log ind')}"
            "<p>Du kan ændre din PIN, når du er logget ind.</p>"
        )
        text = f"Velkommen til {self.brand_name}!\n\nBrugernavn: {username}\nPIN: {pin}\n\nLog ind: {url}"
        subject = f"Velkommen til {self.brand_name}"
        return RenderedEmail(subject, self.frame(subject, body), text)

    def pin_reset(self, tenant_id: str, username: str, token: str) -> RenderedEmail:
        url = self.links.url(tenant_id, f"/reset-pin?token={token}")
        brand = html.escape(self.brand_name)
        body = (
            "<h1>Nulstil din PIN</h1>"
            f"<p>Hej {html.escape(username)},</p>"
            f"<p>Du har anmodet om at nulstille din PIN for {brand}.</p>"
            "<p>Klik på knappen nedenfor for at vælge en ny PIN:</p>"
            f"{self._button(url, 'Nulstil PIN')}"
            f"{self._fallback_link(url, 'Eller kopier og indsæt denne URL i din browser:')}"
            "<p>Dette link udløber om 1 time.</p>"
            "<p>Hvis du ikke har anmodet om en PIN-nulstilling, kan du ignorere denne email.</p>"
        )
        text = f"Hej {username},\n\nNulstil din PIN: {url}\n\nDette link udløber om 1 time."
        return RenderedEmail("Reset your PIN", self.frame("Reset your PIN", body), text)

    def cold_outreach(self, club_name: str, president_name: str) -> RenderedEmail:
        url = self.links.marketing_url()
        club = html.escape(club_name)
        body = (
            f"<p>Kære {html.escape(president_name)},</p>"
            f"<p>Jeg skriver til dig som formand for {club}, fordi vi har bygget Rundeklar: "
            "et værktøj der gør det nemt for trænere at planlægge træning, fordele spillere "
            "på baner og holde styr på fremmøde.</p>"
            f"<p>Vi vil gerne give {club} en gratis prøveperiode, så jeres trænere kan afprøve "
            "det i praksis.</p>"
            f"{self._button(url, 'Læs mere om Rundeklar')}"
            "<p>Svar gerne på denne email, hvis du vil høre mere eller aftale en kort demo.</p>"
            f"<p>Venlig hilsen<br>{html.escape(self.brand_name)}</p>"
        )
        text = (
            f"Kære {president_name},\n\nVi vil gerne give {club_name} en gratis prøveperiode "
            f"på Rundeklar. Læs mere: {url}"
        )
        subject = f"Rundeklar til {club_name}"
        return RenderedEmail(subject, self.frame(subject, body, automatic=False), text)

    def signup_notification(
        self, club_name: str, email: str, tenant_id: str, plan_id: Optional[str]
    ) -> RenderedEmail:
        plan = PLAN_NAMES.get(plan_id or "", "Ikke angivet")
        tenant_url = f"https://{tenant_id}.{self.links.base_domain}"
        body = (
            "<h2>Ny klub har oprettet prøveperiode</h2>"
            '<div style="background: #f5f5f5; padding: 20px; border-radius: 8px;">'
            f"<p><strong>Klubnavn:</strong> {html.escape(club_name)}</p>"
            f"<p><strong>Email:</strong> {html.escape(email)}</p>"
            f"<p><strong>Tenant ID:</strong> {html.escape(tenant_id)}</p>"
            f"<p><strong>Pakke:</strong> {html.escape(plan)}</p>"
            f"<p><strong>URL:</strong> {html.escape(tenant_url)}</p>"
            "</div>"
            "<p>Husk at følge op på prøveperioden og sikre at klubben får den nødvendige support.</p>"
        )
        text = f"Ny klub: {club_name} ({tenant_id}), {email}, pakke: {plan}"
        subject = f"Ny klub har oprettet prøveperiode: {club_name}"
        return RenderedEmail(subject, self.frame(subject, body, questions=False), text)
