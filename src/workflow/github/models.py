"""Request models for the GitHub client."""

from typing import List

from pydantic import BaseModel, Field


class PullRequestRequest(BaseModel):
    """Parameters for opening a pull request.

    Attributes:
        title: Pull request title.
        body: Pull request description in markdown.
        head_branch: Branch containing the changes.
        base_branch: Branch the changes should be merged into.
        labels: Labels to apply once the pull request exists.
        draft: Open the pull request as a draft.
    """

    title: str = Field(..., min_length=1)
    body: str = Field(default="")
    head_branch: str = Field(..., min_length=1)
    base_branch: str = Field(default="main", min_length=1)
    labels: List[str] = Field(default_factory=list)
    draft: bool = Field(default=False)
