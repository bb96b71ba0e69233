from __future__ import annotations
import re
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from .. import repository
from ..db import get_db
from ..models import Degree, Level, Subject
from .auth import User, get_current_user

router = APIRouter(prefix="/profile", tags=["profile"])

STUDENT_ID_RE = re.compile(r"c[0-9]{8}", re.IGNORECASE)


class SubjectLevels(BaseModel):
	MATHS: Level
	MIDGE: Level
	DATABASE_SYSTEMS: Level


class ProfileRequest(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	student_id: str
	degree: Degree
	degree_name: str
	goals: Optional[str] = None
	levels: SubjectLevels

	@field_validator("student_id")
	@classmethod
	def _student_id_format(cls, value: str) -> str:
		if not STUDENT_ID_RE.fullmatch(value or ""):
			raise ValueError("Student ID must be c########")
		return value

	@field_validator("degree_name")
	@classmethod
	def _degree_name_present(cls, value: str) -> str:
		if len((value or "").strip()) < 2:
			raise ValueError("Select your programme")
		return value.strip()


@router.get("")
async def get_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = repository.get_profile(db, user.email)
	levels = repository.subject_levels(db, user.email)
	return {
		"completed": repository.is_onboarded(db, user.email),
		"profile": {
			"studentId": (row.student_id if row else None) or "",
			"degree": (row.degree if row else None) or Degree.BACHELORS.value,
			"degreeName": (row.degree_name if row else None) or "",
			"goals": (row.goals if row else None) or "",
			"levels": {s.value: levels.get(s.value, Level.BEGINNER.value) for s in Subject},
		},
	}


@router.post("")
async def save_profile(req: ProfileRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	fields = {"student_id": req.student_id, "degree": req.degree.value, "degree_name": req.degree_name}
	# Omitted goals keep whatever the intake flow stored
	if req.goals is not None:
		fields["goals"] = req.goals
	repository.upsert_profile(db, user.email, **fields)
	for subject in Subject:
		repository.upsert_level(db, user.email, subject, getattr(req.levels, subject.value))
	return {"ok": True}
