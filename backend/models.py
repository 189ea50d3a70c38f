from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DUE_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class TaskCategory(str, Enum):
    ALL = "All"  # view-only, never stored on a task
    WIFE = "Wife"
    DAUGHTER = "Daughter"
    WORK = "Work"
    CHORES = "Chores"


# Categories a task can actually be filed under
TASK_CATEGORIES = [c for c in TaskCategory if c is not TaskCategory.ALL]


class Priority(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class TaskFilter(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    COMPLETED = "completed"


def _storable_category(value: Optional[TaskCategory]) -> Optional[TaskCategory]:
    if value is TaskCategory.ALL:
        raise ValueError("'All' is a view, not a category tasks can be filed under")
    return value


class Task(BaseModel):
    id: str
    user_id: str
    text: str
    category: TaskCategory
    completed: bool = False
    priority: Priority = Priority.MEDIUM
    due_date: Optional[str] = None  # YYYY-MM-DD
    position: int = 0
    created_at: str  # ISO format datetime string


class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    category: TaskCategory
    priority: Priority = Priority.MEDIUM
    due_date: Optional[str] = Field(default=None, pattern=DUE_DATE_PATTERN)

    @field_validator("category")
    @classmethod
    def check_category(cls, value):
        return _storable_category(value)

    def compose_text(self) -> str:
        """Title and description joined the way the task form shows them."""
        title = self.title.strip()
        description = (self.description or "").strip()
        return f"{title} - {description}" if description else title


class TaskUpdate(BaseModel):
    text: Optional[str] = None
    completed: Optional[bool] = None
    priority: Optional[Priority] = None
    due_date: Optional[str] = Field(default=None, pattern=DUE_DATE_PATTERN)
    category: Optional[TaskCategory] = None

    @field_validator("category")
    @classmethod
    def check_category(cls, value):
        return _storable_category(value)


class TaskOrder(BaseModel):
    task_ids: list[str]


class User(BaseModel):
    id: str
    display_name: Optional[str] = None
    email: Optional[str] = None


class SignInRequest(BaseModel):
    id_token: str


class SignInResponse(BaseModel):
    token: str
    user: User


class ApiKeyPayload(BaseModel):
    api_key: str


class ApiKeyStatus(BaseModel):
    is_set: bool
    last_four: Optional[str] = None


class ParseRequest(BaseModel):
    input: str


class ParsedTaskData(BaseModel):
    """Fields the AI assistant managed to extract. Any of them may be missing."""
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[TaskCategory] = None
    due_date: Optional[str] = None  # YYYY-MM-DD


class ParseResponse(BaseModel):
    parsed: ParsedTaskData
    suggested_text: str
