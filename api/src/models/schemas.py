from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime
from uuid import UUID

class BuildStepResponse(BaseModel):
    step_id: int
    name: str
    image: str
    commands: List[str]
    env: Dict[str, str] = {}
    status: str
    started: Optional[datetime] = None
    finished: Optional[datetime] = None

    class Config:
        from_attributes = True

class BuildSummary(BaseModel):
    id: UUID
    repo_id: UUID
    build_num: int
    git_ref: str
    commit_sha: str
    status: str
    author: Optional[str] = None
    message: Optional[str] = None
    created: datetime
    started: Optional[datetime] = None
    finished: Optional[datetime] = None

    class Config:
        from_attributes = True

class BuildResponse(BuildSummary):
    steps: List[BuildStepResponse] = []

class RepositoryResponse(BaseModel):
    id: UUID
    git_provider_id: UUID
    owner: str
    name: str
    clone_url: str
    default_branch: Optional[str] = None
    status: str
    created_at: datetime

    class Config:
        from_attributes = True

class BuildLogLine(BaseModel):
    time: int
    log: str

class BuildLogsResponse(BaseModel):
    build_num: int
    step_id: int
    logs: List[BuildLogLine]

class StartBuildRequest(BaseModel):
    branch: str

class GitRefResponse(BaseModel):
    name: str
    kind: str
    commit_sha: str
