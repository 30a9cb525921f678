from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Tuple

# ==========================================
# 🧱 SHARED MODELS
# ==========================================

class Verdict(str, Enum):
    SAFE = "Safe"
    SUSPICIOUS = "Suspicious"
    MALICIOUS = "Malicious"


class Explanation(BaseModel):
    """
    One line of the explanation trail.

    `weight` is the number of points this explanation contributed, not the
    configured weight of the signal.
    """
    signal: str
    details: str
    weight: int = Field(ge=0)

    class Config:
        frozen = True


class Analysis(BaseModel):
    """Final, read-only result of scoring one email"""
    score: int = Field(ge=0, le=100)
    verdict: Verdict
    explanations: Tuple[Explanation, ...] = ()
    sender_email: str = ""
    sender_name: str = ""
    subject: str = ""
    domain: str = ""
    originating_ip: Optional[str] = None

    class Config:
        frozen = True

    @classmethod
    def degenerate(cls) -> "Analysis":
        """Well-formed placeholder returned when analysis itself failed"""
        return cls(score=0, verdict=Verdict.SAFE, explanations=())

# ==========================================
# 📤 RESPONSE MODELS
# ==========================================

class AnalysisResponse(BaseModel):
    analysis: Analysis
    error: Optional[str] = None


class BlacklistResponse(BaseModel):
    entries: List[str]


class SignalSettingsResponse(BaseModel):
    enabled: Dict[str, bool]
    weights: Dict[str, int]

# ==========================================
# 📥 INPUT MODELS
# ==========================================

class EmailSubmission(BaseModel):
    raw_email: str = Field(min_length=1)


class BlacklistEntryIn(BaseModel):
    entry: str = Field(min_length=1)
