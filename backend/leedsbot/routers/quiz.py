from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import repository
from ..db import get_db
from ..llm_client import ChatCompletionClient, get_chat_client
from ..models import Level, Subject
from ..quiz import QUIZ_LENGTH, compose_quiz, grade, sanitize_items
from .auth import User, get_current_user


router = APIRouter(prefix="/quiz", tags=["quiz"])

logger = logging.getLogger(__name__)


class GenerateRequest(BaseModel):
    subject: Subject
    mode: Literal["new", "focus"] = "new"


class SubmitRequest(BaseModel):
    subject: Subject
    items: List[Dict[str, Any]] = Field(default_factory=list)
    answers: Dict[int, Optional[int]] = Field(default_factory=dict)


@router.post("/generate")
async def generate_quiz(
    req: GenerateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: Optional[ChatCompletionClient] = Depends(get_chat_client),
):
    return await compose_quiz(db, client, user.email, req.subject, req.mode)


@router.post("/submit")
async def submit_quiz(req: SubmitRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not req.items:
        raise HTTPException(status_code=400, detail="No items to grade")
    # Items come back from the client; re-sanitize before grading and storing them
    items = sanitize_items(req.items, Level.BEGINNER)
    if not items:
        raise HTTPException(status_code=400, detail="No items to grade")
    if len(items) != QUIZ_LENGTH:
        raise HTTPException(status_code=400, detail=f"A quiz has exactly {QUIZ_LENGTH} items")
    result = grade(items, req.answers)
    repository.create_attempt(
        db,
        email=user.email,
        subject=req.subject,
        items=[it.wire() for it in items],
        responses={k: v for k, v in req.answers.items() if v is not None},
        score=result["score"],
        max_score=result["max"],
    )
    logger.info("quiz: %s attempt scored %d/%d", req.subject.value, result["score"], result["max"])
    return result
