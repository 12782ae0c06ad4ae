"""Frame markup and card images.

Builds the HTML document carrying the frame meta tags, the share links, and
minimal SVG cards for the statistics and for the fallback messages.
"""

import html
from dataclasses import dataclass
from urllib.parse import quote, urlencode

from .lookup import UserStats

COMPOSE_URL = "https://warpcast.com/~/compose"
JOIN_URL = "https://warpcast.com/basenuts"
SHARE_TEXT = "Check out your 🥜 stats! \n\n Frame by @arsalang75523 & @jeyloo.eth "

MESSAGES = {
    "rate_limited": ("Too many requests. Wait a minute.", "#ffcccc"),
    "busy": ("Lots of nuts flying around. Please wait a moment.", "#fff3cd"),
    "error": ("Error rendering frame. Please try again later.", "#ffcccc"),
}


@dataclass(frozen=True)
class Button:
    """A frame button: a post action, or a link when ``target`` is set."""

    label: str
    target: str | None = None


def share_frame_url(base_url: str, token: str, fid: str, username: str, pfp_url: str) -> str:
    """URL of a user's frame, embedded in shared casts."""
    query = urlencode({"hashid": token, "fid": fid, "username": username, "pfpUrl": pfp_url})
    return f"{base_url.rstrip('/')}/?{query}"


def compose_cast_url(frame_url: str) -> str:
    """Compose link pre-filled with the share text and the frame embed."""
    return f"{COMPOSE_URL}?text={quote(SHARE_TEXT)}&embeds[]={quote(frame_url, safe='')}"


def render_frame(image_url: str, post_url: str, buttons: list[Button]) -> str:
    """Render the HTML document for a frame response."""
    meta = [
        ("fc:frame", "vNext"),
        ("fc:frame:image", image_url),
        ("fc:frame:image:aspect_ratio", "1.91:1"),
        ("fc:frame:post_url", post_url),
        ("og:image", image_url),
        ("og:title", "Nut State"),
    ]
    for index, button in enumerate(buttons, start=1):
        meta.append((f"fc:frame:button:{index}", button.label))
        if button.target:
            meta.append((f"fc:frame:button:{index}:action", "link"))
            meta.append((f"fc:frame:button:{index}:target", button.target))

    tags = "\n".join(
        f'    <meta property="{html.escape(name)}" content="{html.escape(value)}" />'
        for name, value in meta
    )
    return (
        "<!DOCTYPE html>\n<html>\n  <head>\n"
        "    <title>Nut State</title>\n"
        f"{tags}\n"
        "  </head>\n  <body></body>\n</html>\n"
    )


def _text(x: str, y: str, value: str, size: int, color: str, weight: str = "normal") -> str:
    return (
        f'<text x="{x}" y="{y}" font-family="Poetsen One, sans-serif" font-size="{size}" '
        f'font-weight="{weight}" fill="{color}" text-anchor="middle">{html.escape(value)}</text>'
    )


def render_stats_card(username: str, fid: str, pfp_url: str, stats: UserStats) -> str:
    """SVG card with a user's statistics."""
    parts = [
        '<svg xmlns="http://www.w3.org/2000/svg" width="1146" height="600" viewBox="0 0 1146 600">',
        '<rect width="100%" height="100%" fill="#f4d9a6"/>',
    ]
    if pfp_url:
        parts.append(
            f'<image href="{html.escape(pfp_url)}" x="22" y="17" width="230" height="230" '
            'clip-path="circle(115px at 115px 115px)"/>'
        )
    parts += [
        _text("60%", "15%", username or "Unknown", 52, "white", "bold"),
        _text("60%", "25%", f"FID: {fid or 'N/A'}", 30, "#432818", "bold"),
        _text("32%", "50%", str(stats.today_count), 40, "#ff8c00"),
        _text("60%", "50%", str(stats.total_count), 40, "#ff8c00"),
        _text("32%", "80%", str(stats.remaining_allowance), 40, "#28a745"),
        _text("60%", "80%", str(stats.rank), 40, "#007bff"),
        "</svg>",
    ]
    return "".join(parts)


def render_message_card(kind: str) -> str:
    """SVG card for one of the fallback messages."""
    message, background = MESSAGES.get(kind, MESSAGES["error"])
    return (
        '<svg xmlns="http://www.w3.org/2000/svg" width="1146" height="600" viewBox="0 0 1146 600">'
        f'<rect width="100%" height="100%" fill="{background}"/>'
        f"{_text('50%', '50%', message, 30, '#ff0000')}"
        "</svg>"
    )
