"""
LexDesk CRM - Outbound message errors

Each failure class maps to one user-facing message. All of them end the
current attempt; nothing is retried.
"""


class DispatchError(Exception):
    """Base error for WhatsApp / email sends."""

    code = "SEND_FAILED"
    status_code = 502
    user_message = "Failed to send message"

    def __init__(self, message: str = None, code: str = None):
        self.user_message = message or self.user_message
        if code is not None:
            self.code = code
        super().__init__(self.user_message)

    def to_detail(self) -> dict:
        return {"error": self.user_message, "code": self.code}


# ==================== WHATSAPP ====================

class MissingPhoneNumberError(DispatchError):
    code = "MISSING_PHONE"
    status_code = 400
    user_message = "Phone number is required"


class InvalidPhoneNumberError(DispatchError):
    code = "INVALID_PHONE"
    status_code = 400
    user_message = "Invalid phone number format"


class MissingMessageError(DispatchError):
    code = "MISSING_MESSAGE"
    status_code = 400
    user_message = "Message is required for non-template messages"


class ReEngagementRequiredError(DispatchError):
    code = "RE_ENGAGEMENT_REQUIRED"
    status_code = 400
    user_message = (
        "Message failed: More than 24 hours have passed since the customer last replied. "
        "You can only send template messages after 24 hours."
    )


class MediaTooLargeError(DispatchError):
    code = "MEDIA_TOO_LARGE"
    status_code = 400
    user_message = "File is too large (16MB max)"


class WhatsAppApiError(DispatchError):
    code = "WHATSAPP_API_ERROR"
    user_message = "Failed to send WhatsApp message"


# ==================== EMAIL ====================

class MissingRecipientError(DispatchError):
    code = "MISSING_RECIPIENT"
    status_code = 400
    user_message = "No recipient email address"


class AttachmentTooLargeError(DispatchError):
    code = "ATTACHMENT_TOO_LARGE"
    status_code = 400
    user_message = "Attachment is too large. Please choose files under 4MB."


class EmailRelayError(DispatchError):
    code = "EMAIL_SEND_FAILED"
    user_message = "Failed to send email."
