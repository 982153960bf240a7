from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    prompt: str
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


class ModelInfo(BaseModel):
    name: str
    switched: bool = False
    switched_from: Optional[str] = Field(default=None, alias="switchedFrom")

    model_config = ConfigDict(populate_by_name=True)


class ChatResponse(BaseModel):
    success: bool = True
    message: str
    session_id: str = Field(alias="sessionId")
    model: str
    model_info: ModelInfo = Field(alias="modelInfo")
    debug: Optional[dict] = None

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class SwitchModelRequest(BaseModel):
    target_model: str = Field(alias="targetModel")

    model_config = ConfigDict(populate_by_name=True)


class ProbeModelRequest(BaseModel):
    model: str


class NewChatRequest(BaseModel):
    inherit_summary_from: Optional[str] = Field(default=None, alias="inheritSummaryFrom")

    model_config = ConfigDict(populate_by_name=True)
