from typing import Optional
from pydantic import BaseModel

class UserCreate(BaseModel):
    # Pas de validation ici: le schéma de la base décide
    name: Optional[str] = None
    email: Optional[str] = None

class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None

class UserResponse(BaseModel):
    id: int
    name: str
    email: str

    class Config:
        from_attributes = True  # Pour compatibilité Pydantic v2
