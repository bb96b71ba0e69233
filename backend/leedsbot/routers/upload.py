from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from .. import repository
from ..db import get_db
from ..extract import extract_text
from ..models import Level, Subject
from .auth import User, get_current_user

router = APIRouter(prefix="/upload", tags=["upload"])


@router.post("")
async def upload_documents(
	subject: Subject = Form(Subject.MATHS),
	level: Level = Form(Level.BEGINNER),
	files: Optional[List[UploadFile]] = File(None),
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	files = [f for f in (files or []) if f is not None and f.filename]
	if not files:
		raise HTTPException(status_code=400, detail="No files uploaded")
	created: List[str] = []
	for file in files:
		data = await file.read()
		extracted = extract_text(file.filename, file.content_type, data)
		repository.create_document(
			db,
			owner=user.email,
			subject=subject,
			level=level,
			filename=file.filename,
			mime_type=extracted.mime_type,
			text=extracted.text,
		)
		created.append(file.filename)
	return {"ok": True, "count": len(created), "files": created}


@router.get("")
async def list_documents(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	docs = repository.documents_for_owner(db, user.email)
	return {
		"docs": [
			{
				"id": d.id,
				"filename": d.filename,
				"subject": d.subject,
				"level": d.level,
				"mimeType": d.mime_type,
				"createdAt": d.created_at.isoformat(),
			}
			for d in docs
		]
	}
