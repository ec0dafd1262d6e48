"""Directory records: departments, users, contacts, quick replies, workflows, chatbot."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Department(BaseModel):
    """A routing target. ``position`` is the menu index order."""
    id: str
    name: str
    description: str = ""
    color: str = "#25D366"
    position: int = 0


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    AGENT = "AGENT"


class User(BaseModel):
    id: str
    name: str
    email: str
    role: UserRole = UserRole.AGENT
    avatar: Optional[str] = None
    department_id: Optional[str] = None
    allow_general_connection: bool = False  # may see chats without a department


class ContactSource(str, Enum):
    MANUAL = "manual"
    CSV = "csv"
    GOOGLE = "google"


class Contact(BaseModel):
    id: str
    name: str
    phone: str
    phone_key: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None
    source: ContactSource = ContactSource.MANUAL
    last_sync: Optional[datetime] = None


class QuickReply(BaseModel):
    id: str
    title: str
    content: str


class WorkflowStep(BaseModel):
    id: str
    title: str
    target_department_id: Optional[str] = None  # completing the step transfers the chat


class Workflow(BaseModel):
    id: str
    title: str
    steps: List[WorkflowStep] = Field(default_factory=list)


class BusinessHours(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    is_open: bool = True
    open_time: str = "09:00"
    close_time: str = "18:00"


class ChatbotConfig(BaseModel):
    is_enabled: bool = False
    business_hours: List[BusinessHours] = Field(default_factory=list)
    away_message: str = ""
    greeting_message: str = ""
