"""
Database Schemas for the sugarcane marketplace (MongoDB collections)

Each Pydantic model describes the documents stored in one collection:
- User -> "users"
- CropListing -> "croplistings"
- Order -> "orders"
- Schedule -> "schedules"
- Application -> "applications"
- Invitation -> "invitations"
- Bill -> "bills"
- Contract -> "contracts"
- FarmerContract -> "farmercontracts"

References between documents are stored as id strings.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["Farmer", "HHM", "Worker", "Factory"]
ROLES = ("Farmer", "HHM", "Worker", "Factory")

ListingStatus = Literal["active", "sold", "expired"]
OrderStatus = Literal["pending", "accepted", "rejected", "completed", "cancelled"]
Urgency = Literal["low", "normal", "high", "urgent"]

# Allowed order status changes; anything else leaves the order untouched
ORDER_TRANSITIONS = {
    "pending": {"accepted", "rejected", "cancelled"},
    "accepted": {"completed"},
}

# Role-specific attributes shown on public profiles
ROLE_PROFILE_FIELDS = {
    "Farmer": ["location", "farmSize", "farmingExperience", "farmingMethods", "equipment",
               "certifications", "cropTypes", "irrigationType"],
    "HHM": ["location", "managementExperience", "teamSize", "managementOperations", "servicesOffered"],
    "Worker": ["location", "skills", "workPreferences", "wageRate", "availability"],
    "Factory": ["factoryName", "factoryLocation", "factoryDescription", "capacity", "experience",
                "specialization"],
}


class User(BaseModel):
    name: str = Field(..., max_length=50)
    username: str = Field(..., min_length=3, max_length=20, pattern=r"^[a-z0-9_]+$")
    email: str
    phone: str
    passwordHash: str
    role: Role
    isActive: bool = True
    # Farmer / HHM / Worker
    location: Optional[str] = None
    # Worker
    skills: List[str] = Field(default_factory=list)
    availability: Literal["Available", "Unavailable"] = "Available"
    # Factory
    factoryName: Optional[str] = None
    factoryLocation: Optional[str] = None
    associatedFactories: List[str] = Field(default_factory=list)
    associatedHHMs: List[str] = Field(default_factory=list)


Text = Optional[str]


def _text(max_length: int = 200):
    return Field(None, max_length=max_length)


class ProfileUpdate(BaseModel):
    """Fields any user may change on their own profile. Unknown keys are dropped."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    name: Text = Field(None, min_length=1, max_length=50)
    phone: Text = Field(None, pattern=r"^\+?[\d\s\-\(\)]+$")


class FarmerProfileUpdate(ProfileUpdate):
    location: Text = _text(100)
    farmSize: Text = _text(100)
    farmingExperience: Text = _text()
    farmingMethods: Text = _text()
    equipment: Text = _text()
    certifications: Text = _text()
    cropTypes: Text = _text()
    irrigationType: Text = _text(100)


class HHMProfileUpdate(ProfileUpdate):
    location: Text = _text(100)
    managementExperience: Text = _text()
    teamSize: Text = _text(100)
    managementOperations: Text = _text()
    servicesOffered: Text = _text()


class WorkerProfileUpdate(ProfileUpdate):
    location: Text = _text(100)
    skills: Optional[List[str]] = None
    workPreferences: Text = _text()
    wageRate: Text = _text(100)
    availability: Optional[Literal["Available", "Unavailable"]] = None

    @field_validator("skills", mode="before")
    @classmethod
    def split_skills(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return value

    @field_validator("skills")
    @classmethod
    def drop_blank_skills(cls, value):
        return value if value is None else [s.strip() for s in value if s.strip()]


class FactoryProfileUpdate(ProfileUpdate):
    factoryName: Text = _text(100)
    factoryLocation: Text = _text(100)
    factoryDescription: Text = _text(1000)
    capacity: Text = _text(100)
    experience: Text = _text()
    specialization: Text = _text()


PROFILE_UPDATES = {
    "Farmer": FarmerProfileUpdate,
    "HHM": HHMProfileUpdate,
    "Worker": WorkerProfileUpdate,
    "Factory": FactoryProfileUpdate,
}


class CropListing(BaseModel):
    farmer_id: str
    title: str
    crop_variety: str
    quantity_in_tons: float = Field(..., gt=0)
    expected_price_per_ton: float = Field(..., gt=0)
    harvest_availability_date: datetime
    location: str
    description: Optional[str] = None
    status: ListingStatus = "active"


class BuyerDetails(BaseModel):
    name: str
    email: str
    phone: str


class SellerDetails(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class OrderDetails(BaseModel):
    quantityWanted: float = Field(..., gt=0)
    proposedPrice: float = Field(..., gt=0)
    totalAmount: float
    deliveryLocation: str
    message: str = ""
    urgency: Urgency = "normal"


class Order(BaseModel):
    listingId: str
    sellerId: str
    buyerId: str
    buyerDetails: BuyerDetails
    sellerDetails: SellerDetails
    orderDetails: OrderDetails
    status: OrderStatus = "pending"
    isPartialFulfillment: bool = False
    originalQuantityRequested: Optional[float] = None


class Schedule(BaseModel):
    hhmId: str
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    location: Optional[str] = Field(None, max_length=200)
    requiredSkills: List[str] = Field(..., min_length=1)
    workerCount: int = Field(..., ge=1, le=1000)
    wageOffered: float = Field(..., ge=0)
    startDate: datetime
    endDate: Optional[datetime] = None
    jobType: Literal["harvesting", "maintenance"] = "harvesting"
    status: Literal["open", "closed"] = "open"
    applicationsCount: int = 0
    acceptedWorkersCount: int = 0


class Application(BaseModel):
    workerId: str
    scheduleId: str
    hhmId: str
    status: Literal["pending", "approved", "rejected"] = "pending"
    applicationMessage: Optional[str] = Field(None, max_length=500)
    workerSkills: List[str] = Field(..., min_length=1)
    experience: Optional[str] = Field(None, max_length=200)
    expectedWage: Optional[float] = Field(None, ge=0)
    availability: Literal["full-time", "part-time", "flexible"] = "flexible"
    reviewedAt: Optional[datetime] = None
    reviewNotes: Optional[str] = Field(None, max_length=300)


class Invitation(BaseModel):
    invitationType: Literal["hhm-to-worker", "factory-to-hhm"] = "hhm-to-worker"
    hhmId: str
    workerId: Optional[str] = None
    scheduleId: Optional[str] = None
    factoryId: Optional[str] = None
    status: Literal["pending", "accepted", "declined"] = "pending"
    message: Optional[str] = Field(None, max_length=500)
    responseMessage: Optional[str] = Field(None, max_length=500)
    expiresAt: Optional[datetime] = None
    respondedAt: Optional[datetime] = None


class Bill(BaseModel):
    factoryId: str
    farmerId: str
    cropQuantity: float = Field(..., gt=0)
    totalAmount: float = Field(..., gt=0)
    status: Literal["pending", "paid"] = "pending"
    billDate: datetime


ContractStatus = Literal["factory_invite", "hhm_pending", "factory_offer", "factory_rejected", "hhm_accepted",
                         "hhm_rejected", "expired", "cancelled"]
ACTIVE_CONTRACT_STATUSES = ("factory_invite", "hhm_pending", "factory_offer")
# Negotiation between an HHM and a factory; every other status is final
CONTRACT_TRANSITIONS = {
    "factory_invite": {"hhm_accepted", "hhm_rejected", "cancelled", "expired"},
    "hhm_pending": {"factory_offer", "factory_rejected", "cancelled", "expired"},
    "factory_offer": {"hhm_accepted", "hhm_rejected", "cancelled", "expired"},
}

FarmerContractStatus = Literal["farmer_pending", "hhm_accepted", "hhm_rejected", "auto_cancelled", "completed"]
FARMER_CONTRACT_TRANSITIONS = {
    "farmer_pending": {"hhm_accepted", "hhm_rejected", "auto_cancelled"},
    "hhm_accepted": {"completed"},
}


class Contract(BaseModel):
    hhm_id: str
    factory_id: str
    status: ContractStatus = "hhm_pending"
    initiated_by: Literal["hhm", "factory"]
    hhm_request_details: Optional[dict] = None
    factory_allowance_list: Optional[dict] = None
    factory_requirements: Optional[dict] = None
    title: Optional[str] = Field(None, max_length=200)
    initial_message: Optional[str] = Field(None, max_length=500)
    response_message: Optional[str] = Field(None, max_length=500)
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    contract_value: Optional[float] = Field(None, ge=0)
    duration_days: Optional[int] = Field(None, ge=1)
    revision_count: int = 0
    last_modified_by: Optional[Literal["hhm", "factory"]] = None
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None


class FarmerContract(BaseModel):
    farmer_id: str
    hhm_id: str
    status: FarmerContractStatus = "farmer_pending"
    contract_details: dict = Field(default_factory=dict)
    duration_days: int = Field(..., ge=1, le=365)
    grace_period_days: int = Field(2, ge=1, le=30)
    delivery_date: Optional[datetime] = None
    payment_date: Optional[datetime] = None
    payment_status: Literal["pending", "paid"] = "pending"
