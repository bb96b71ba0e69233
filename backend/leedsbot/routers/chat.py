from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..chat import ChatTurn, IntakeAnswer, normalize_subject, run_chat_turn
from ..db import get_db
from ..llm_client import ChatCompletionClient, get_chat_client
from .auth import User, get_current_user

router = APIRouter(prefix="/chat", tags=["chat"])


class IntakeEntry(BaseModel):
	q: str = ""
	a: str = ""


class ChatRequest(BaseModel):
	subject: Optional[str] = "MATHS"
	message: Optional[str] = None
	init: bool = False
	intake: Optional[List[IntakeEntry]] = None


@router.post("")
async def chat(
	req: ChatRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: Optional[ChatCompletionClient] = Depends(get_chat_client),
):
	turn = ChatTurn(
		subject=normalize_subject(req.subject),
		message=req.message or "",
		init=req.init,
		intake=[IntakeAnswer(q=e.q, a=e.a) for e in (req.intake or [])],
	)
	return await run_chat_turn(db, client, user.email, turn)
