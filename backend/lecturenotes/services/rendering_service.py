"""
Lecture Notes Backend — Notes Rendering Service
=================================================

What:  Turns StructuredNotes into the downloadable artifact formats.
How:
    txt  → plain text, rendered locally
    md   → Markdown, rendered locally
    pdf  → Cornell-layout HTML posted to Gotenberg's Chromium route
           (`/forms/chromium/convert/html`), which returns the PDF bytes

Gotenberg failures are translated into the collaborator taxonomy:
    connect error / timeout / 5xx   → ServiceUnavailable
    429                             → RateLimited
    401 / 403                       → AuthFailed
    other 4xx                       → BadInput
    200 with an empty body          → EmptyResult
"""

import html
import logging
from typing import List, Optional

import httpx

from lecturenotes.config import settings
from lecturenotes.exceptions import (
    AuthFailed,
    BadInput,
    EmptyResult,
    RateLimited,
    ServiceUnavailable,
)
from lecturenotes.services.collaborators import DocumentRenderingService, StructuredNotes
from lecturenotes.services.plans import OutputFormat

logger = logging.getLogger(__name__)


# ── Local renderers ───────────────────────────────────────────────────────

def render_text(notes: StructuredNotes) -> str:
    lines: List[str] = [notes.title.upper()]
    if notes.subject:
        lines.append(notes.subject)
    lines += ["", "SUMMARY", notes.summary, ""]
    for section in notes.sections:
        lines.append(section.heading.upper())
        for cue in section.cues:
            lines.append(f"  ? {cue}")
        for point in section.notes:
            lines.append(f"  - {point}")
        lines.append("")
    if notes.key_terms:
        lines.append("KEY TERMS")
        lines += [f"  {t.term}: {t.definition}" for t in notes.key_terms]
        lines.append("")
    if notes.review_questions:
        lines.append("REVIEW QUESTIONS")
        lines += [f"  {i}. {q}" for i, q in enumerate(notes.review_questions, 1)]
        lines.append("")
    return "\n".join(lines)


def render_markdown(notes: StructuredNotes) -> str:
    lines: List[str] = [f"# {notes.title}"]
    if notes.subject:
        lines.append(f"*{notes.subject}*")
    lines += ["", "## Summary", "", notes.summary, ""]
    for section in notes.sections:
        lines += [f"## {section.heading}", ""]
        if section.cues:
            lines.append("**Cues:** " + " · ".join(section.cues))
            lines.append("")
        lines += [f"- {point}" for point in section.notes]
        lines.append("")
    if notes.key_terms:
        lines += ["## Key Terms", ""]
        lines += [f"- **{t.term}**: {t.definition}" for t in notes.key_terms]
        lines.append("")
    if notes.review_questions:
        lines += ["## Review Questions", ""]
        lines += [f"{i}. {q}" for i, q in enumerate(notes.review_questions, 1)]
        lines.append("")
    return "\n".join(lines)


_PAGE_CSS = """
body { font-family: Georgia, serif; font-size: 11pt; color: #222; }
h1 { border-bottom: 2px solid #333; padding-bottom: 4pt; }
table.cornell { width: 100%; border-collapse: collapse; margin-bottom: 14pt; }
table.cornell td { vertical-align: top; border: 1px solid #999; padding: 6pt; }
td.cue { width: 30%; background: #f4f4f4; font-weight: bold; }
.summary { border: 1px solid #333; padding: 8pt; margin-top: 16pt; }
"""


def render_html(notes: StructuredNotes) -> str:
    """Cornell page: cue column left, notes right, summary at the bottom."""
    esc = html.escape
    rows = []
    for section in notes.sections:
        cues = "".join(f"<p>{esc(c)}</p>" for c in section.cues)
        points = "".join(f"<li>{esc(p)}</li>" for p in section.notes)
        rows.append(
            f"<tr><td class=\"cue\"><h3>{esc(section.heading)}</h3>{cues}</td>"
            f"<td><ul>{points}</ul></td></tr>"
        )
    terms = "".join(
        f"<dt>{esc(t.term)}</dt><dd>{esc(t.definition)}</dd>" for t in notes.key_terms
    )
    questions = "".join(f"<li>{esc(q)}</li>" for q in notes.review_questions)
    subject = f"<p><em>{esc(notes.subject)}</em></p>" if notes.subject else ""
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{esc(notes.title)}</title><style>{_PAGE_CSS}</style></head><body>"
        f"<h1>{esc(notes.title)}</h1>{subject}"
        f"<table class=\"cornell\">{''.join(rows)}</table>"
        + (f"<h2>Key Terms</h2><dl>{terms}</dl>" if terms else "")
        + (f"<h2>Review Questions</h2><ol>{questions}</ol>" if questions else "")
        + f"<div class=\"summary\"><h2>Summary</h2><p>{esc(notes.summary)}</p></div>"
        "</body></html>"
    )


# ── Service ───────────────────────────────────────────────────────────────

class RenderingService(DocumentRenderingService):
    def __init__(
        self,
        gotenberg_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.gotenberg_url = (gotenberg_url or settings.gotenberg_url).rstrip("/")
        self.timeout = timeout or settings.gotenberg_timeout
        # Tests inject an httpx.MockTransport
        self.transport = transport

    async def render(self, notes: StructuredNotes, fmt: str) -> bytes:
        try:
            output = OutputFormat(fmt)
        except ValueError:
            raise BadInput(message=f"Unsupported output format '{fmt}'", service="renderer")

        if output == OutputFormat.TXT:
            return render_text(notes).encode("utf-8")
        if output == OutputFormat.MD:
            return render_markdown(notes).encode("utf-8")
        return await self._render_pdf(notes)

    async def _render_pdf(self, notes: StructuredNotes) -> bytes:
        url = f"{self.gotenberg_url}/forms/chromium/convert/html"
        files = {"files": ("index.html", render_html(notes).encode("utf-8"), "text/html")}
        data = {
            "marginTop": "1in",
            "marginBottom": "1in",
            "marginLeft": "1in",
            "marginRight": "1in",
            "printBackground": "true",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, data=data, files=files)
        except httpx.TimeoutException as e:
            raise ServiceUnavailable(
                message=f"Gotenberg timed out after {self.timeout}s",
                service="gotenberg",
                context={"error": str(e)},
            )
        except httpx.HTTPError as e:
            raise ServiceUnavailable(
                message=f"Gotenberg unreachable: {e}",
                service="gotenberg",
                context={"error_type": type(e).__name__},
            )

        status = response.status_code
        if status >= 400:
            context = {"status_code": status, "body": response.text[:500]}
            message = f"Gotenberg returned HTTP {status}"
            logger.warning("%s: %s", message, context["body"])
            if status == 429:
                raise RateLimited(message=message, service="gotenberg", context=context)
            if status in (401, 403):
                raise AuthFailed(message=message, service="gotenberg", context=context)
            if status < 500:
                raise BadInput(message=message, service="gotenberg", context=context)
            raise ServiceUnavailable(message=message, service="gotenberg", context=context)

        if not response.content:
            raise EmptyResult(message="Gotenberg returned an empty PDF", service="gotenberg")

        logger.info("Rendered PDF for '%s' (%d bytes)", notes.title, len(response.content))
        return response.content


rendering_service = RenderingService()
