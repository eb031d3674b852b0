"""Persona (model), reference image and music track models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from src.models.job import utcnow


class PersonaImage(BaseModel):
    """A reference image belonging to a persona."""

    id: str = Field(min_length=1)
    model_id: str = Field(min_length=1)
    gcs_url: str = Field(min_length=1)
    filename: str = ""
    is_primary: bool = False


class Persona(BaseModel):
    """A reusable identity substituted into generation steps."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    images: list[PersonaImage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def primary_image(self) -> Optional[PersonaImage]:
        """The primary reference image, else the first one."""
        for image in self.images:
            if image.is_primary:
                return image
        return self.images[0] if self.images else None


class MusicTrack(BaseModel):
    """A library audio track used by bg-music steps."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    gcs_url: str = Field(min_length=1)
    duration: Optional[float] = None
    is_default: bool = False
