"""
Digest - HTML Rendering.
"""

from html import escape
from typing import List, Optional
from urllib.parse import quote, urlencode

from .fingerprint import DigestCandidate


STYLE = """
      body { font-family: Arial, sans-serif; color: #222; }
      table { border-collapse: collapse; width: 100%; }
      th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
      th { background-color: #f2f2f2; }
      .footer { color: #777; font-size: 12px; margin-top: 24px; }
"""


def digest_subject(count: int) -> str:
    return f"Weekly Threat Summary - {count} Potential Matches"


def unsubscribe_url(base_url: str, token: str, email: str) -> str:
    query = urlencode({"token": token, "email": email}, quote_via=quote)
    return f"{base_url}?{query}"


def render_digest(
    candidates: List[DigestCandidate],
    recipient_name: Optional[str],
    unsubscribe_link: str,
) -> str:
    """Render one account's digest. Highest scores first."""
    ordered = sorted(candidates, key=lambda c: c.score, reverse=True)
    greeting = f"Hello {escape(recipient_name)}," if recipient_name else "Hello,"

    rows = []
    for candidate in ordered:
        date = candidate.occurred_at.strftime("%Y-%m-%d") if candidate.occurred_at else "-"
        subject = escape(candidate.subject_name or candidate.subject_id or "Unknown subject")
        link = (
            f'<a href="{escape(candidate.view_url, quote=True)}">View Details</a>'
            if candidate.view_url else "-"
        )
        rows.append(
            "        <tr>"
            f"<td>{subject}</td>"
            f"<td>{candidate.score:g}%</td>"
            f"<td>{link}</td>"
            f"<td>{date}</td>"
            "</tr>"
        )

    return f"""<!DOCTYPE html>
<html>
  <head>
    <style>{STYLE}    </style>
  </head>
  <body>
    <p>{greeting}</p>
    <h2>Weekly Threat Summary</h2>
    <p>You have {len(ordered)} potential threat matches from the past week:</p>
    <table>
      <thead>
        <tr><th>Subject</th><th>Match Score</th><th>View Details</th><th>Date</th></tr>
      </thead>
      <tbody>
{chr(10).join(rows)}
      </tbody>
    </table>
    <p class="footer">Repeat sightings of the same subject are listed once, at their highest score.</p>
    <p class="footer"><a href="{escape(unsubscribe_link, quote=True)}">Unsubscribe</a> from weekly summaries.</p>
  </body>
</html>
"""
