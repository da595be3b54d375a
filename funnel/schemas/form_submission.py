"""
FormSubmission - a completed intake form posted by the external form provider.
Sections map onto the same keys the AI extraction uses, so both paths share
one profile merge.
"""
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PersonalInfo(_Section):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None


class MedicalInfo(_Section):
    has_allergies: Optional[bool] = None
    allergies_detail: Optional[str] = None
    has_chronic_disease: Optional[bool] = None
    chronic_disease_detail: Optional[str] = None
    uses_blood_thinners: Optional[bool] = None
    blood_thinner_detail: Optional[str] = None
    has_previous_surgery: Optional[bool] = None
    previous_surgery_detail: Optional[str] = None
    has_previous_hair_transplant: Optional[bool] = None
    previous_hair_transplant_detail: Optional[str] = None
    current_medications: Optional[str] = None
    alcohol_use: Optional[str] = None
    smoking_use: Optional[str] = None


class TreatmentInfo(_Section):
    treatment_category: Optional[str] = None
    complaint: Optional[str] = None
    urgency: Optional[str] = None
    budget_mentioned: Optional[str] = None


class FormPhoto(_Section):
    url: str
    slot: Optional[str] = Field(default=None, description="front, top, side_left, side_right, back")
    file_name: Optional[str] = None


class FormSubmission(BaseModel):
    model_config = ConfigDict(extra="ignore")

    submission_id: Optional[str] = None
    form_id: Optional[str] = None
    lead_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    personal_info: PersonalInfo = Field(default_factory=PersonalInfo)
    medical_info: Optional[MedicalInfo] = None
    treatment_info: TreatmentInfo = Field(default_factory=TreatmentInfo)
    photos: list[FormPhoto] = Field(default_factory=list)
    raw_data: Optional[dict[str, Any]] = None

    @property
    def dedup_key(self) -> Optional[str]:
        return self.submission_id or self.form_id

    @property
    def contact_phone(self) -> Optional[str]:
        return self.phone or self.personal_info.phone

    @property
    def contact_email(self) -> Optional[str]:
        return self.email or self.personal_info.email

    def extraction(self) -> dict[str, Any]:
        """Flat field map in the AI extraction vocabulary. Unset answers are left out."""
        fields: dict[str, Any] = {}
        fields.update(self.personal_info.model_dump(exclude_none=True))
        fields.update(self.treatment_info.model_dump(exclude_none=True))
        if self.medical_info is not None:
            medical = self.medical_info.model_dump(exclude_none=True)
            if "current_medications" in medical:
                medical["medications"] = medical.pop("current_medications")
            if medical.get("has_previous_hair_transplant"):
                fields["has_previous_treatment"] = True
            fields.update(medical)
        return fields
