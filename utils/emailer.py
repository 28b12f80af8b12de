import smtplib
from email.message import EmailMessage

from flask import current_app


class EmailNotConfigured(RuntimeError):
    pass


def send_email(to_email: str, subject: str, body: str):
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)

    if not host or not from_email:
        raise EmailNotConfigured("SMTP_HOST / SMTP_FROM_EMAIL not configured")

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    # smtplib errors propagate so the outbox can schedule a retry
    with smtplib.SMTP(host, port, timeout=10) as server:
        if use_tls:
            server.starttls()
        if username and password:
            server.login(username, password)
        server.send_message(msg)
