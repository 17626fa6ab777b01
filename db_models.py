from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, field_validator


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    """One stored contact row."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str] = None
    phone_number: Optional[str] = None
    linked_id: Optional[int] = None
    link_precedence: LinkPrecedence
    created_at: datetime
    updated_at: datetime

    @property
    def is_primary(self) -> bool:
        return self.link_precedence == LinkPrecedence.PRIMARY


class ConsolidatedIdentity(BaseModel):
    """A primary contact with everything linked to it, oldest first."""

    primary_contact_id: int
    emails: List[str]
    phone_numbers: List[str]
    secondary_contact_ids: List[int]

    @classmethod
    def from_cluster(cls, primary_id: int, contacts: List[Contact]) -> "ConsolidatedIdentity":
        emails = []
        phone_numbers = []
        secondary_ids = []

        for contact in contacts:
            if contact.email and contact.email not in emails:
                emails.append(contact.email)
            if contact.phone_number and contact.phone_number not in phone_numbers:
                phone_numbers.append(contact.phone_number)
            if not contact.is_primary:
                secondary_ids.append(contact.id)

        return cls(
            primary_contact_id=primary_id,
            emails=emails,
            phone_numbers=phone_numbers,
            secondary_contact_ids=secondary_ids,
        )


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def phone_from_number(cls, value):
        # clients often send the phone number as a JSON number
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]

    @classmethod
    def from_identity(cls, identity: ConsolidatedIdentity) -> "ContactResponse":
        return cls(
            primaryContactId=identity.primary_contact_id,
            emails=identity.emails,
            phoneNumbers=identity.phone_numbers,
            secondaryContactIds=identity.secondary_contact_ids,
        )


class FinalResponse(BaseModel):
    contact: ContactResponse


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail
