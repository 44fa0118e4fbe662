"""
Outgoing mail.

The application keeps its sender on app.state.mailer. The default one writes
the message to the log, a deployment with a mail relay swaps in its own object
with the same send() method.
"""
import logging

from fastapi import Request

log = logging.getLogger("orbya.mailer")


class LoggingMailer:
    def send(self, to: str, subject: str, body: str) -> None:
        log.info("Mail to %s: %s\n%s", to, subject, body)


def password_reset_mail(username: str, link: str, expire_minutes: int):
    subject = "Password reset - Orbya"
    body = (
        f"Hi {username},\n\n"
        "We received a request to reset the password of your Orbya account.\n"
        f"Open this link to choose a new one: {link}\n\n"
        f"The link expires in {expire_minutes} minutes and works only once.\n"
        "If you did not ask for this, ignore this mail and your account stays as it is.\n"
    )
    return subject, body


def get_mailer(request: Request):
    return request.app.state.mailer
