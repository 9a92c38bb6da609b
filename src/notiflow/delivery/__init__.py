"""Delivery channels."""

from notiflow.delivery.smtp import SmtpChannel, classify_smtp_error

__all__ = ["SmtpChannel", "classify_smtp_error"]
