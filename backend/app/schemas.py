"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(
        description="Error message",
        example="Google Ads token expired or revoked. Please reconnect Google Ads."
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "detail": "Google Ads token expired or revoked. Please reconnect Google Ads."
            }
        }
    }


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        example="ok"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }


class MessageResponse(BaseModel):
    """Simple acknowledgement."""

    message: str = Field(description="Human readable result", example="Google Ads disconnected")


class AuthUrlResponse(BaseModel):
    """Consent screen URL for starting an OAuth connection."""

    auth_url: str = Field(
        description="Google consent URL; open in the current window or a popup",
        example="https://accounts.google.com/o/oauth2/v2/auth?client_id=...&state=3f1c...%7Cpopup"
    )


class IntegrationStatus(BaseModel):
    """Connection state of one vendor integration for a client.

    `connected` is true only when a refresh token, a selected account and a
    connection timestamp are all stored.
    """

    state: str = Field(description="DISCONNECTED, CONNECTING or CONNECTED", example="CONNECTED")
    connected: bool = Field(description="Shorthand for state == CONNECTED", example=True)
    account_id: Optional[str] = Field(
        default=None,
        description="Selected Google Ads customer id or GA4 property id",
        example="1234567890"
    )
    account_email: Optional[str] = Field(
        default=None,
        description="Google account that granted consent",
        example="marketing@client.com"
    )
    connected_at: Optional[datetime] = Field(default=None, description="When the connection completed")


class SelectCustomerRequest(BaseModel):
    """Choose the Google Ads customer a client reports on."""

    customer_id: str = Field(
        description="Customer id, with or without dashes",
        example="123-456-7890"
    )


class SelectPropertyRequest(BaseModel):
    """Choose the GA4 property a client reports on."""

    property_id: str = Field(
        description="Property id, bare or as properties/<id>",
        example="properties/987654321"
    )


class CustomerOption(BaseModel):
    customer_id: str = Field(description="Digits-only customer id", example="1234567890")
    display_id: str = Field(description="Dashed display form", example="123-456-7890")


class CustomerListResponse(BaseModel):
    customers: List[CustomerOption]


class PropertyOption(BaseModel):
    property_id: str = Field(description="Numeric property id", example="987654321")
    display_name: str = Field(description="\"Account - Property\" label", example="Acme - acme.com (GA4)")
    account: str = Field(description="Parent account resource name", example="accounts/555")


class PropertyListResponse(BaseModel):
    properties: List[PropertyOption]


class WebhookAck(BaseModel):
    received: bool = True
