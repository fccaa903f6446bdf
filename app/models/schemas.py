# backend/app/models/schemas.py

from typing import Literal, Optional

from pydantic import BaseModel, Field


class BatchCreate(BaseModel):
    cropName: str
    category: Optional[str] = None
    area: Optional[float] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    location: Optional[str] = None
    sowingDate: Optional[str] = None
    plantingDate: Optional[str] = None
    harvestDate: Optional[str] = None
    description: Optional[str] = None
    fertilizerNotes: Optional[str] = None
    pesticideNotes: Optional[str] = None

    def to_document(self) -> dict:
        return {
            "crop_name": self.cropName.strip(),
            "category": self.category,
            "area": self.area,
            "quantity": self.quantity,
            "unit": self.unit,
            "location": self.location,
            "sowing_date": self.sowingDate,
            "planting_date": self.plantingDate,
            "harvest_date": self.harvestDate,
            "description": self.description,
            "fertilizer_notes": self.fertilizerNotes,
            "pesticide_notes": self.pesticideNotes,
        }


class BatchReject(BaseModel):
    reason: Optional[str] = None


class StageUpdate(BaseModel):
    notes: Optional[str] = None
    status: Optional[Literal["PENDING", "IN_PROGRESS", "COMPLETED"]] = None


class RecordKey(BaseModel):
    imageUrl: str
    batchId: str
    stageName: str


class DecisionRequest(RecordKey):
    verificationStatus: Literal["REAL", "FAKE"]
    rejectionReason: Optional[str] = None
    expectedVersion: Optional[int] = Field(default=None, ge=0)


class ResetRequest(RecordKey):
    expectedVersion: Optional[int] = Field(default=None, ge=0)


class AppealCreate(RecordKey):
    appealReason: Optional[str] = None


class AppealResolve(BaseModel):
    resolution: Literal["RESET", "APPROVED", "UPHELD"]
    note: Optional[str] = None
