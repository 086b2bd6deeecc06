"""
Pydantic schemas for the drip·mate API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

GrinderName = Literal["fellow_gen2", "comandante", "timemore", "1zpresso"]
BrewMethod = Literal["v60", "chemex", "kalita", "aeropress", "french_press"]


class RegisterRequest(BaseModel):
    email: Optional[str] = None


class RegisterResponse(BaseModel):
    success: bool = True
    resent: bool


class UserProfile(BaseModel):
    id: int
    username: str
    deviceId: Optional[str] = None
    grinderPreference: str
    methodPreference: str
    waterHardness: Optional[float] = None
    createdAt: str


class ValidateResponse(BaseModel):
    success: bool = True
    valid: bool = True
    user: UserProfile


class CoffeeListResponse(BaseModel):
    success: bool = True
    coffees: list[dict]


class SaveCoffeesRequest(BaseModel):
    coffees: list[dict] = Field(default_factory=list)


class SaveCoffeesResponse(BaseModel):
    success: bool = True
    saved: int


class GrinderRequest(BaseModel):
    grinder: GrinderName


class GrinderResponse(BaseModel):
    success: bool = True
    grinder: str


class MethodRequest(BaseModel):
    method: BrewMethod


class MethodResponse(BaseModel):
    success: bool = True
    method: str


class WaterHardnessRequest(BaseModel):
    waterHardness: float = Field(..., ge=0, le=50)


class WaterHardnessResponse(BaseModel):
    success: bool = True
    waterHardness: Optional[float] = None


class AnalyzeRequest(BaseModel):
    imageData: Optional[str] = None
    mediaType: Optional[str] = None


class CoffeeAnalysis(BaseModel):
    name: str
    origin: str
    process: str
    cultivar: str
    altitude: str
    roaster: str
    tastingNotes: str
    addedDate: str


class AnalyzeResponse(BaseModel):
    success: bool = True
    data: CoffeeAnalysis


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    app: str
    version: str
    timestamp: str
    uptime: float
    environment: str


class SuccessResponse(BaseModel):
    success: bool = True


class WhitelistEntry(BaseModel):
    id: int
    email: str
    name: str
    website: str
    note: str
    added_at: str
    token: Optional[str] = None
    status: Literal["invited", "sent", "registered"]


class WhitelistListResponse(BaseModel):
    success: bool = True
    entries: list[WhitelistEntry]


class WhitelistCreateRequest(BaseModel):
    email: Optional[str] = None
    name: str = Field(default="", max_length=200)
    website: str = Field(default="", max_length=500)
    note: str = Field(default="", max_length=2000)


class WhitelistCreateResponse(BaseModel):
    success: bool = True
    id: int


class WhitelistPatchRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    website: Optional[str] = Field(default=None, max_length=500)
    note: Optional[str] = Field(default=None, max_length=2000)
