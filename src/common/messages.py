from __future__ import annotations

from dataclasses import dataclass


DEFAULT_BRAND = "Tabeebak - طبيبك"
DEFAULT_SUPPORT_URL = "https://tabeebak.com"

# Inbound texts that get the welcome reply
GREETING_KEYWORDS = ("مرحبا", "hello")


@dataclass(frozen=True)
class LoginLinkContext:
    """Context for formatting a magic-link login message.

    Attributes
    - url: the one-time login URL
    - display_name: how to greet the recipient
    - valid_minutes: link lifetime shown to the recipient
    """

    url: str
    display_name: str = "المستخدم"
    valid_minutes: int = 15


def _header(brand: str) -> str:
    return f"🏥 *{brand}*"


def format_login_link(ctx: LoginLinkContext, *, brand: str = DEFAULT_BRAND) -> str:
    """Return the login-link message. The link is single use, so the text says so."""
    parts = [
        _header(brand),
        "",
        f"مرحباً {ctx.display_name}! 👋",
        f"Hello {ctx.display_name}!",
        "",
        "تم طلب تسجيل الدخول إلى حسابك.",
        "A sign-in to your account was requested.",
        "",
        "🔗 *رابط تسجيل الدخول / Login link:*",
        ctx.url,
        "",
        f"⏰ صالح لمدة {ctx.valid_minutes} دقيقة / Valid for {ctx.valid_minutes} minutes",
        "🔒 يعمل لمرة واحدة فقط / Works only once",
        "",
        "⚠️ *تحذير:* لا تشارك هذا الرابط مع أي شخص!",
        "Do not share this link with anyone.",
        "",
        "إذا لم تطلب هذا الرابط، يرجى تجاهل هذه الرسالة.",
        "If you did not request it, ignore this message.",
    ]
    return "\n".join(parts)


def format_booking_confirmed(doctor_name: str, booking_id: str, *, brand: str = DEFAULT_BRAND) -> str:
    parts = [
        _header(brand),
        "",
        "✅ تم تأكيد حجزك!",
        "Your booking is confirmed!",
        "",
        f"👨‍⚕️ الطبيب: {doctor_name}",
        f"Doctor: {doctor_name}",
        "",
        f"🔢 رقم الحجز: {booking_id}",
        f"Booking ID: {booking_id}",
        "",
        "سيتم إشعارك عندما يكون الطبيب جاهزاً.",
        "You'll be notified when the doctor is ready.",
    ]
    return "\n".join(parts)


def format_payment_received(*, brand: str = DEFAULT_BRAND) -> str:
    parts = [
        _header(brand),
        "",
        "✅ تم استلام إيصال الدفع",
        "Payment receipt received",
        "",
        "سيتم التحقق منه خلال 24 ساعة",
        "Will be verified within 24 hours",
        "",
        "شكراً لصبرك 🙏",
        "Thank you for your patience",
    ]
    return "\n".join(parts)


def format_payment_verified(doctor_name: str, *, brand: str = DEFAULT_BRAND) -> str:
    parts = [
        _header(brand),
        "",
        "✅ تم التحقق من الدفع!",
        "Payment verified!",
        "",
        f"حجزك مع {doctor_name} مؤكد الآن",
        f"Your booking with {doctor_name} is now confirmed",
        "",
        "سيتم إشعارك عندما يكون الطبيب جاهزاً",
        "You'll be notified when the doctor is ready",
    ]
    return "\n".join(parts)


def format_doctor_ready(doctor_name: str, meet_link: str, *, brand: str = DEFAULT_BRAND) -> str:
    # The waiting room closes after 10 minutes on the meeting side
    parts = [
        _header(brand),
        "",
        f"👨‍⚕️ الطبيب {doctor_name} في انتظارك!",
        f"Dr. {doctor_name} is waiting for you!",
        "",
        "يرجى دخول غرفة الانتظار:",
        "Please enter the waiting room:",
        "",
        meet_link,
        "",
        "⚠️ يرجى الدخول خلال 10 دقائق",
        "Please enter within 10 minutes",
    ]
    return "\n".join(parts)


def is_greeting(text: str, keywords=GREETING_KEYWORDS) -> bool:
    lowered = text.lower()
    return any(k in lowered for k in keywords)


def format_welcome_reply(support_url: str = DEFAULT_SUPPORT_URL, *, service_name: str = "طبيبك") -> str:
    return f"مرحباً بك في {service_name}! 🏥\nللمساعدة، تواصل معنا على الموقع: {support_url}"


__all__ = [
    "DEFAULT_BRAND",
    "DEFAULT_SUPPORT_URL",
    "GREETING_KEYWORDS",
    "LoginLinkContext",
    "format_booking_confirmed",
    "format_doctor_ready",
    "format_login_link",
    "format_payment_received",
    "format_payment_verified",
    "format_welcome_reply",
    "is_greeting",
]
