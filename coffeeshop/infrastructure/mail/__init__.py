from .smtp_gateway import Mailer, SMTPMailer

__all__ = ["Mailer", "SMTPMailer"]
