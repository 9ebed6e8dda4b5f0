"""Markdown composition and sanitized HTML rendering for notification emails."""
import re
from typing import Dict, List, Optional

import bleach
from markdown_it import MarkdownIt

# Single parser reused for performance; raw HTML disabled so user text is always escaped.
_md = MarkdownIt("commonmark", {"linkify": True, "typographer": True, "html": False}).enable(["linkify", "table", "strikethrough"])

EMAIL_ALLOWED_TAGS = [
    "p",
    "ul",
    "ol",
    "li",
    "strong",
    "em",
    "h1",
    "h2",
    "h3",
    "h4",
    "table",
    "thead",
    "tbody",
    "tr",
    "th",
    "td",
    "hr",
    "a",
    "br",
]

ALLOWED_ATTRIBUTES = {
    "a": ["href", "title", "rel", "target"],
    "th": ["colspan", "rowspan", "align"],
    "td": ["colspan", "rowspan", "align"],
}


def _normalize_whitespace(text: str) -> str:
    cleaned = re.sub(r"[\r\t]+", " ", text or "")
    cleaned = re.sub(r" +", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def _inline(value: object) -> str:
    """Collapse user text onto one line so it cannot open new markdown blocks."""
    return re.sub(r"\s+", " ", str(value or "")).strip()


def markdown_to_html(md_text: str) -> str:
    rendered = _md.render(_normalize_whitespace(md_text))
    return bleach.clean(rendered, tags=EMAIL_ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)


def markdown_to_email_html(md_text: str) -> str:
    safe_html = markdown_to_html(md_text)
    return (
        "<div style=\"font-family: Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #333;\">"
        f"{safe_html}"
        "</div>"
    )


def markdown_to_plaintext(md_text: str) -> str:
    return html_to_plaintext(markdown_to_html(md_text))


def format_sections(sections: List[Dict[str, object]]) -> str:
    """Build markdown from an ordered list of sections."""
    parts: List[str] = []
    for section in sections:
        title = _inline(section.get("title"))
        if title:
            parts.append(f"## {title}")
        for bullet in section.get("bullets") or []:
            if bullet is None:
                continue
            bullet_text = _inline(bullet)
            if bullet_text:
                parts.append(f"- {bullet_text}")
        body = section.get("body")
        if body:
            parts.append(_normalize_whitespace(str(body)))
        parts.append("")
    return "\n".join(p for p in parts if p.strip())


def _details_section(complaint: Dict[str, object], status_label: Optional[str] = None) -> Dict[str, object]:
    return {
        "title": complaint.get("title"),
        "bullets": [
            f"**Category:** {_inline(complaint.get('category'))}",
            f"**Priority:** {_inline(complaint.get('priority'))}",
            f"**Location:** {_inline(complaint.get('location')) or 'Not specified'}",
            f"**Description:** {_inline(complaint.get('description'))}",
            f"**Status:** {status_label or _inline(complaint.get('status'))}",
        ],
    }


def format_confirmation_markdown(complaint: Dict[str, object], citizen_name: str) -> str:
    return format_sections(
        [
            {
                "body": f"Dear {_inline(citizen_name)}, your complaint has been successfully submitted. Here are the details:",
            },
            _details_section(complaint, status_label="Pending"),
            {
                "body": "We will review your complaint and assign it to the appropriate department shortly. "
                "You can track the progress of your complaint through your dashboard.",
            },
        ]
    )


def format_assignment_markdown(complaint: Dict[str, object], solver_name: str) -> str:
    return format_sections(
        [
            {
                "body": f"Dear {_inline(solver_name)}, a new complaint has been assigned to you. "
                "Please review and take appropriate action.",
            },
            _details_section(complaint, status_label="Assigned"),
        ]
    )


def format_status_update_markdown(
    complaint: Dict[str, object],
    citizen_name: str,
    previous_status: str,
    new_status: str,
    note: Optional[str] = None,
) -> str:
    bullets = [
        f"**Previous Status:** {_inline(previous_status)}",
        f"**New Status:** {_inline(new_status)}",
    ]
    if note:
        bullets.append(f"**Note:** {_inline(note)}")
    return format_sections(
        [
            {"body": f"Dear {_inline(citizen_name)}, the status of your complaint has been updated."},
            {"title": complaint.get("title"), "bullets": bullets},
        ]
    )


def format_daily_summary_markdown(complaints: List[Dict[str, object]], admin_name: str, date_label: str, stats: Dict[str, int]) -> str:
    sections: List[Dict[str, object]] = [
        {"body": f"Dear {_inline(admin_name)}, here is the summary of complaints for {_inline(date_label)}:"},
        {
            "title": "Summary Statistics",
            "bullets": [
                f"**Total Complaints:** {stats.get('total', 0)}",
                f"**Submitted:** {stats.get('submitted', 0)}",
                f"**Assigned:** {stats.get('assigned', 0)}",
                f"**Resolved:** {stats.get('resolved', 0)}",
            ],
        },
    ]
    if complaints:
        sections.append(
            {
                "title": "Recent Complaints",
                "bullets": [
                    f"**{_inline(c.get('title'))}** (Category: {c.get('category')} | Priority: {c.get('priority')} | Status: {c.get('status')})"
                    for c in complaints[:5]
                ],
            }
        )
    return format_sections(sections)


def html_to_plaintext(html_text: str) -> str:
    text_only = bleach.clean(html_text or "", tags=[], attributes={}, strip=True)
    return re.sub(r"\s+", " ", text_only).strip()
