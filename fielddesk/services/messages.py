"""Outbound message texts (Bahasa Indonesia, WhatsApp markdown)."""

from __future__ import annotations

from datetime import datetime

from .phone import format_phone_for_display
from .ticket_rules import (
    CATEGORY_INSTALL,
    CATEGORY_LABELS,
    STATUS_ASSIGNED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
)

_MAP_HINTS = ("sharelok", "maps.google.com", "goo.gl", "maps.app.goo.gl")

_STATUS_LINES = {
    STATUS_OPEN: "Menunggu penugasan teknisi",
    STATUS_ASSIGNED: "Teknisi sudah ditugaskan",
    STATUS_IN_PROGRESS: "Pekerjaan sedang berlangsung",
    STATUS_COMPLETED: "Selesai",
    STATUS_CANCELLED: "Dibatalkan",
}

_PURPOSE_LABELS = {
    "REGISTER": "pendaftaran",
    "RESET_PASSWORD": "reset password",
}


def _category_label(category: str) -> str:
    return CATEGORY_LABELS.get(category, category)


def _address_line(address: str | None) -> str:
    if not address:
        return ""
    if any(hint in address for hint in _MAP_HINTS):
        return f"🗺️ Lokasi: {address}\n"
    return f"📍 Alamat: {address}\n"


def _details_label(category: str) -> str:
    return "📦 Paket" if category == CATEGORY_INSTALL else "🔧 Masalah"


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%d/%m/%Y %H:%M")


def new_ticket_announcement(ticket, customer) -> str:
    """Broadcast to every active technician once a ticket is approved."""
    lines = (
        f"🚨 *Tiket Baru {_category_label(ticket.category)}*\n\n"
        f"🎫 Tiket: {ticket.ticket_number}\n"
        f"👤 Pelanggan: {getattr(customer, 'name', None) or '-'}\n"
        f"{_details_label(ticket.category)}: {ticket.details or '-'}\n"
        f"{_address_line(ticket.address)}"
    )
    if ticket.category == CATEGORY_INSTALL:
        lines += "\n💡 Ambil tiket ini lewat aplikasi jika Anda tersedia."
    return lines


def ticket_received_for_customer(ticket) -> str:
    return (
        f"🎫 *Tiket {_category_label(ticket.category)} Dibuat*\n\n"
        f"📋 Nomor Tiket: {ticket.ticket_number}\n"
        f"{_address_line(ticket.address)}"
        f"⏰ Status: {_STATUS_LINES[STATUS_OPEN]}\n\n"
        "Terima kasih telah menggunakan layanan kami. "
        "Kami akan segera menugaskan teknisi untuk menangani tiket Anda."
    )


def assignment_detail(ticket, customer, technician_name: str) -> str:
    """Full ticket detail sent to the technician an admin assigned."""
    scheduled = f"⏰ Jadwal: {_format_time(ticket.scheduled_at)}\n" if ticket.scheduled_at else ""
    return (
        f"📢 *Penugasan Tiket {_category_label(ticket.category)}*\n\n"
        f"👤 Pelanggan: {getattr(customer, 'name', None) or '-'}\n"
        f"📞 Kontak: {format_phone_for_display(getattr(customer, 'phone', None)) or '-'}\n"
        f"{_details_label(ticket.category)}: {ticket.details or '-'}\n"
        f"{_address_line(ticket.address)}"
        f"{scheduled}"
        f"🔧 Ditugaskan kepada: {technician_name}\n"
        f"🧾 Tiket: {ticket.ticket_number}"
    )


def status_change_for_customer(ticket, *, old_status: str, new_status: str, technician_names: list[str]) -> str:
    technicians = ", ".join(technician_names) or "Teknisi"
    header = {
        STATUS_ASSIGNED: f"✅ *Tiket {_category_label(ticket.category)} Sedang Diproses*",
        STATUS_IN_PROGRESS: f"🚀 *Pekerjaan {_category_label(ticket.category)} Dimulai*",
        STATUS_COMPLETED: f"🎉 *{_category_label(ticket.category)} Selesai!*",
        STATUS_CANCELLED: f"❌ *Tiket {_category_label(ticket.category)} Dibatalkan*",
    }.get(new_status, f"ℹ️ *Status Tiket {ticket.ticket_number} Diperbarui*")

    text = (
        f"{header}\n\n"
        f"📋 Nomor Tiket: {ticket.ticket_number}\n"
        f"👨‍🔧 Teknisi: {technicians}\n"
        f"{_address_line(ticket.address)}"
        f"⏰ Status: {_STATUS_LINES.get(new_status, new_status)}\n"
    )
    if new_status == STATUS_COMPLETED:
        text += f"🕒 Waktu Selesai: {_format_time(ticket.completed_at)}\n\n"
        text += "Terima kasih telah menggunakan layanan kami!"
    elif new_status == STATUS_CANCELLED and ticket.completion_notes:
        text += f"📝 Catatan: {ticket.completion_notes}"
    return text


def decline_notice_for_staff(ticket, *, technician_name: str, remaining: int) -> str:
    follow_up = (
        "Tiket kembali OPEN dan perlu ditugaskan ulang."
        if remaining == 0
        else f"Masih ada {remaining} teknisi pada tiket ini."
    )
    return (
        f"⚠️ *Penugasan Ditolak*\n\n"
        f"🧾 Tiket: {ticket.ticket_number}\n"
        f"🔧 Teknisi: {technician_name}\n"
        f"{follow_up}"
    )


def one_time_code_message(code: str, *, purpose: str, ttl_minutes: int) -> str:
    return (
        f"🔐 Kode {_PURPOSE_LABELS.get(purpose, purpose.lower())} Anda: *{code}*\n\n"
        f"Kode berlaku {ttl_minutes} menit. Jangan bagikan kode ini kepada siapa pun."
    )
