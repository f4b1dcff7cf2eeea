from datetime import datetime
from typing import List, Literal, Optional, Set

import pydantic


class Model(pydantic.BaseModel):
    pass


class GitUser(Model):
    login: str
    name: Optional[str] = None
    email: Optional[str] = None
    html_url: Optional[str] = None

    def __str__(self) -> str:
        return self.login


class Label(Model):
    name: str


class PullRequest(Model):
    number: int
    title: str = ""
    html_url: str = ""
    state: Literal["open", "closed"] = "open"
    merged: Optional[bool] = None
    merged_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user: GitUser
    requested_reviewers: List[GitUser] = pydantic.Field(default_factory=list)
    labels: List[Label] = pydantic.Field(default_factory=list)

    @property
    def label_names(self) -> Set[str]:
        return {label.name for label in self.labels}

    @property
    def is_merged(self) -> bool:
        return bool(self.merged) or self.merged_at is not None

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

    def __str__(self) -> str:
        return f"PR(#{self.number}, {self.html_url})"
