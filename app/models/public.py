# backend/app/models/public.py

from pydantic import BaseModel, Field
from typing import List, Optional


class MediaItem(BaseModel):
    id: int
    title: str
    url: str = Field(description="Public URL of the verified stage photo.")
    description: Optional[str] = None


class Stage(BaseModel):
    id: int
    name: str
    date: str = Field(description="Formatted date of the stage submission.")
    description: str
    status: str
    photos: List[MediaItem] = []


class PublicCertificate(BaseModel):
    productName: str
    batchId: str
    batchCode: Optional[str] = None
    status: str
    farmerName: str
    farmLocation: str
    certificateId: Optional[str] = None
    qrPayload: Optional[str] = None
    certifiedAt: Optional[str] = None
    blockchainTxHash: Optional[str] = None
    onChainVerified: bool = False
    processingStages: List[Stage] = Field(description="The seven farming stages with their verified photos.")
