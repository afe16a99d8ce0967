from datetime import datetime
from pydantic import BaseModel, ConfigDict


class Child(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    created_at: datetime


class ChildRegister(BaseModel):
    name: str = ""
