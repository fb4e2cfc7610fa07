"""HTML notification texts for the chat-bot bridge."""

from typing import Any, Mapping, Optional
from urllib.parse import quote_plus

from utils.text import esc, last10

HTML = {"parse_mode": "HTML", "disable_web_page_preview": True}


def keyword_match(title: str, location: str = "") -> str:
    lines = ["✨ <b>Keyword Matched</b>", f"🛒 {esc(title)}"]
    if location:
        lines.append(f"📍 {esc(location)}")
    return "\n".join(lines)


def product_match(title: str, matched: Optional[str], status: str, location: str = "") -> str:
    lines = ["✨ <b>Product Matched</b>", f"🛒 {esc(title)}"]
    if matched:
        lines.append(f"🧩 Matched With: {esc(matched)}")
    if location:
        lines.append(f"📍 {esc(location)}")
    lines.append(
        {
            "ok": "✅ Click Successful",
            "fail": "❌ Click Failed",
            "skip": "⭐ Click Skipped (Recently Clicked)",
        }.get(status, status)
    )
    return "\n".join(lines)


def lead(label: str, record: Mapping[str, Any]) -> str:
    phone = last10(record.get("mobile"))
    whatsapp = f"https://wa.me/91{phone}" if phone else ""
    address = str(record.get("address") or "")
    maps = f"https://www.google.com/maps/search/?api=1&query={quote_plus(address)}" if address else ""

    lines = [
        label,
        record.get("product") and f"✨ <b>{esc(record['product'])}</b>",
        record.get("buyer") and f"👤 <b>Name:</b> {esc(record['buyer'])}",
        record.get("company") and f"🏢 <b>Company:</b> {esc(record['company'])}",
        phone and f"📞 <b>Mobile:</b> +91{phone}",
        whatsapp and f'💬 <b>WhatsApp:</b> <a href="{esc(whatsapp)}">{esc(whatsapp)}</a>',
        record.get("gstin") and f"🧾 <b>GSTIN:</b> {esc(record['gstin'])}",
        record.get("email") and f"✉️ <b>Email:</b> {esc(record['email'])}",
        address and f"📍 <b>Address:</b> {esc(address)}",
        maps and f'🗺️ <a href="{esc(maps)}">Open in Maps</a>',
        record.get("time") and f"⏰ <b>Time:</b> {esc(record['time'])}",
    ]
    return "\n".join(line for line in lines if line)


def new_lead(record: Mapping[str, Any]) -> str:
    return lead("🆕 <b>New Lead</b>", record)


def updated_lead(record: Mapping[str, Any]) -> str:
    return lead("🔁 <b>Updated Lead</b>", record)


def report_file(label: str, name: str, entries: int) -> str:
    return f"📄 <b>{esc(label)}</b> - {esc(name)} ({entries} entries)"
