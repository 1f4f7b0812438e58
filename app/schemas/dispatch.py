# app/schemas/dispatch.py

from pydantic import BaseModel, Field
from typing import List, Optional


# ---------------------------------------------------------
# ONE GATEWAY CALL
# ---------------------------------------------------------
class SendOutcome(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------
# WHATSAPP PIPELINE RESULT
# ---------------------------------------------------------
class DispatchResult(BaseModel):
    sent_pdf: bool = False
    sent_image: bool = False
    sent_text: bool = False
    message_ids: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def any_sent(self) -> bool:
        return self.sent_pdf or self.sent_image or self.sent_text

    @property
    def media_sent(self) -> bool:
        return self.sent_pdf or self.sent_image

    def summary(self) -> str:
        """One-line channel summary used in the notification to the triggering actor."""
        channels = []
        if self.sent_pdf:
            channels.append("PDF")
        if self.sent_image:
            channels.append("image")
        if self.sent_text:
            channels.append("text")

        if not channels:
            text = "WhatsApp delivery failed"
        else:
            text = "WhatsApp sent: " + ", ".join(channels)

        if self.errors:
            text += " | errors: " + "; ".join(self.errors)
        return text


# ---------------------------------------------------------
# BROWSER PUSH RESULT
# ---------------------------------------------------------
class PushReport(BaseModel):
    attempted: int = 0
    delivered: int = 0
    failed_endpoints: List[str] = Field(default_factory=list)
