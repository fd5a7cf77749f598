from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Dict, Any
from datetime import datetime
from bson import ObjectId

# ============================================
# TENANT MODEL
# ============================================
class DocumentSettings(BaseModel):
    number_padding: int = Field(default=3, ge=1, le=10)

class Tenant(BaseModel):
    tenant_id: Optional[str] = Field(default=None, alias="_id")
    company_name: str
    email: EmailStr
    document_settings: DocumentSettings = Field(default_factory=DocumentSettings)
    sequences: Dict[str, int] = Field(default_factory=dict)
    counters: Dict[str, int] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        json_encoders = {ObjectId: str}

class TenantCreate(BaseModel):
    company_name: str
    email: EmailStr
    number_padding: int = Field(default=3, ge=1, le=10)

class DocumentSettingsUpdate(BaseModel):
    number_padding: int = Field(ge=1, le=10)

# ============================================
# USER MODEL
# ============================================
class User(BaseModel):
    user_id: Optional[str] = Field(default=None, alias="_id")
    tenant_id: str
    name: str
    email: EmailStr
    hashed_password: str
    role: str  # Admin, Staff
    active_status: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        json_encoders = {ObjectId: str}

class RegisterRequest(BaseModel):
    company_name: str
    name: str
    email: EmailStr
    password: str = Field(min_length=6)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]

class RefreshTokenRequest(BaseModel):
    refresh_token: str

# ============================================
# SHARED SUBDOCUMENTS
# ============================================
class PaymentRecord(BaseModel):
    amount: float = Field(ge=0)
    date: Optional[datetime] = None
    description: str = ""

class PaymentCreate(BaseModel):
    amount: float = Field(gt=0)
    date: Optional[datetime] = None
    description: str = ""

class StatusUpdate(BaseModel):
    status: str

class StoredFile(BaseModel):
    """Descriptor handed over by the upload collaborator"""
    generated_id: str
    relative_path: str
    original_name: str = ""

# ============================================
# QUOTATION / INVOICE MODEL
# ============================================
class QuotationLineItem(BaseModel):
    name: str
    category: str = ""
    product_name: Optional[str] = None
    unit: str = "units"
    quantity: float = Field(ge=0)
    selling_price: float
    cost_price: Optional[float] = Field(default=None, ge=0)

class DirectCost(BaseModel):
    category: str  # materials, labor, equipment, subcontractors, transportation, other
    description: str
    amount: float = Field(ge=0)
    date: Optional[datetime] = None
    vendor: str = ""

class QuotationCreate(BaseModel):
    document_number: Optional[str] = None
    type: str = "quotation"  # quotation, invoice
    status: str = "pending"
    customer_name: str = Field(min_length=1)
    customer_phone: str = ""
    customer_address: str = ""
    project_title: str = ""
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    payment_terms: int = Field(default=30, ge=0)
    project_status: str = "planning"
    line_items: List[QuotationLineItem] = Field(default_factory=list)
    payment_history: List[PaymentRecord] = Field(default_factory=list)
    direct_costs: List[DirectCost] = Field(default_factory=list)
    linked_site_visit_id: Optional[str] = None
    notes: str = ""

class QuotationUpdate(BaseModel):
    status: Optional[str] = None
    customer_name: Optional[str] = Field(default=None, min_length=1)
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    project_title: Optional[str] = None
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    payment_terms: Optional[int] = Field(default=None, ge=0)
    project_status: Optional[str] = None
    line_items: Optional[List[QuotationLineItem]] = None
    direct_costs: Optional[List[DirectCost]] = None
    linked_site_visit_id: Optional[str] = None
    notes: Optional[str] = None

class ConvertToInvoiceRequest(BaseModel):
    due_date: Optional[datetime] = None
    payments: List[PaymentRecord] = Field(default_factory=list)

# ============================================
# PURCHASE ORDER MODEL
# ============================================
class PurchaseOrderItem(BaseModel):
    name: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit: str = "units"
    unit_price: float = Field(ge=0)

class PurchaseOrderCreate(BaseModel):
    po_id: Optional[str] = None
    quotation_id: str = ""
    customer_name: str = ""
    supplier_id: Optional[str] = None
    order_date: Optional[datetime] = None
    expected_delivery: Optional[datetime] = None
    status: str = "Draft"
    items: List[PurchaseOrderItem] = Field(min_length=1)
    notes: str = ""

class PurchaseOrderUpdate(BaseModel):
    quotation_id: Optional[str] = None
    customer_name: Optional[str] = None
    supplier_id: Optional[str] = None
    order_date: Optional[datetime] = None
    expected_delivery: Optional[datetime] = None
    items: Optional[List[PurchaseOrderItem]] = Field(default=None, min_length=1)
    notes: Optional[str] = None

class DeliveryVerificationItem(BaseModel):
    name: str
    ordered_quantity: float = 0
    delivered_quantity: float = 0
    is_verified: bool = False
    notes: str = ""

# ============================================
# MATERIAL SALE MODEL
# ============================================
class MaterialSaleItem(BaseModel):
    category_id: str = ""
    category_name: str = ""
    item_id: str = ""
    category: str = "Floor Tile"  # Floor Tile, Wall Tile, Other
    color_code: str = ""
    product_name: str = Field(min_length=1)
    plank: float = Field(default=0, ge=0)
    sqft_per_plank: float = Field(default=0, ge=0)
    total_sqft: float = Field(ge=0)
    unit_price: float = Field(ge=0)
    cost_per_sqft: float = Field(default=0, ge=0)

class MaterialSaleCreate(BaseModel):
    invoice_number: Optional[str] = None
    sale_date: Optional[datetime] = None
    customer_name: str = Field(min_length=1)
    customer_phone: str = ""
    customer_address: str = ""
    payment_terms: int = Field(default=30, ge=1)
    due_date: Optional[datetime] = None
    items: List[MaterialSaleItem] = Field(default_factory=list)
    payment_history: List[PaymentRecord] = Field(default_factory=list)
    status: str = "pending"
    notes: str = ""

class MaterialSaleUpdate(BaseModel):
    sale_date: Optional[datetime] = None
    customer_name: Optional[str] = Field(default=None, min_length=1)
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    payment_terms: Optional[int] = Field(default=None, ge=1)
    due_date: Optional[datetime] = None
    items: Optional[List[MaterialSaleItem]] = None
    notes: Optional[str] = None

# ============================================
# SITE VISIT MODEL
# ============================================
class SiteVisitCreate(BaseModel):
    visit_id: Optional[str] = None
    customer_name: str = Field(min_length=1)
    project_title: str = Field(min_length=1)
    contact_no: str = Field(min_length=1)
    location: str = Field(min_length=1)
    date: Optional[datetime] = None
    site_type: str = Field(min_length=1)
    charge: float = Field(ge=0)
    status: str = "pending"
    color_code: str = ""
    thickness: str = ""
    floor_condition: List[str] = Field(default_factory=list)
    target_area: List[str] = Field(default_factory=list)
    inspection: Dict[str, str] = Field(default_factory=dict)
    other_details: str = ""

class SiteVisitUpdate(BaseModel):
    customer_name: Optional[str] = Field(default=None, min_length=1)
    project_title: Optional[str] = None
    contact_no: Optional[str] = None
    location: Optional[str] = None
    date: Optional[datetime] = None
    site_type: Optional[str] = None
    charge: Optional[float] = Field(default=None, ge=0)
    status: Optional[str] = None
    color_code: Optional[str] = None
    thickness: Optional[str] = None
    floor_condition: Optional[List[str]] = None
    target_area: Optional[List[str]] = None
    inspection: Optional[Dict[str, str]] = None
    other_details: Optional[str] = None

# ============================================
# JOB COST MODEL
# ============================================
class JobCostInvoiceItem(BaseModel):
    category: str = ""
    name: str = Field(min_length=1)
    quantity: float = Field(ge=0)
    unit: str = "units"
    selling_price: float
    cost_price: Optional[float] = Field(default=None, ge=0)

class OtherExpense(BaseModel):
    description: str = Field(min_length=1)
    amount: float = Field(gt=0)
    category: str = "other"
    date: Optional[datetime] = None

class OtherExpenseUpdate(BaseModel):
    description: Optional[str] = Field(default=None, min_length=1)
    amount: Optional[float] = Field(default=None, gt=0)
    category: Optional[str] = None
    date: Optional[datetime] = None

class JobCostCreate(BaseModel):
    document_id: Optional[str] = None
    quotation_id: str = ""
    invoice_id: str = ""
    customer_name: str = ""
    customer_phone: str = ""
    project_title: str = ""
    invoice_date: Optional[datetime] = None
    invoice_items: List[JobCostInvoiceItem] = Field(default_factory=list)
    other_expenses: List[OtherExpense] = Field(default_factory=list)
    customer_invoice_status: str = "pending"
    notes: str = ""

class JobCostUpdate(BaseModel):
    quotation_id: Optional[str] = None
    invoice_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    project_title: Optional[str] = None
    invoice_date: Optional[datetime] = None
    invoice_items: Optional[List[JobCostInvoiceItem]] = None
    customer_invoice_status: Optional[str] = None
    notes: Optional[str] = None

# ============================================
# SUPPLIER / CUSTOMER / CATEGORY MODELS
# ============================================
class SupplierCreate(BaseModel):
    name: str = Field(min_length=1)
    phone: str = ""
    email: str = ""
    address: str = ""
    contact_person: str = ""
    notes: str = ""

class SupplierUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    contact_person: Optional[str] = None
    notes: Optional[str] = None

class SupplierBulkCreate(BaseModel):
    suppliers: List[SupplierCreate] = Field(min_length=1)
    skip_duplicates: bool = True

class BulkDeleteRequest(BaseModel):
    ids: List[str] = Field(min_length=1)

class CustomerCreate(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: str = ""
    address: str = ""

class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    address: Optional[str] = None

class CategoryItem(BaseModel):
    item_name: str = Field(min_length=1)
    base_unit: str = "sqft"
    packaging_unit: str = "box"
    sqft_per_unit: float = Field(default=0, ge=0)

class CategoryCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    items: List[CategoryItem] = Field(default_factory=list)

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
