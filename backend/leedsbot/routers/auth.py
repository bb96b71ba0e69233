from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import logging
import uuid

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, field_validator

from ..settings import settings
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import AuthUser, AuthSession

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72
MIN_PASSWORD_CHARS = 8


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	email: str


class RegisterRequest(BaseModel):
	email: str
	password: str

	@field_validator("email")
	@classmethod
	def _email_shape(cls, value: str) -> str:
		value = normalize_email(value)
		local, _, domain = value.partition("@")
		if not local or "." not in domain:
			raise ValueError("a valid email is required")
		return value

	@field_validator("password")
	@classmethod
	def _password_length(cls, value: str) -> str:
		if len(value) < MIN_PASSWORD_CHARS:
			raise ValueError(f"password must be at least {MIN_PASSWORD_CHARS} characters")
		if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
			raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
		return value


def normalize_email(email: str) -> str:
	return (email or "").strip().lower()


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
	email = normalize_email(email)
	row = db.get(AuthUser, email)
	if row and pwd_context.verify(password, row.password_hash):
		return User(email=email)
	return None


def create_access_token(email: str, session_id: str, expires_delta: Optional[timedelta] = None) -> str:
	if expires_delta is None:
		minutes = settings.access_token_expire_minutes
		expires_delta = timedelta(minutes=minutes) if minutes > 0 else timedelta(days=30)
	claims = {"sub": email, "jti": session_id, "exp": datetime.now(timezone.utc) + expires_delta}
	return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def _token_claims(token: str) -> Tuple[str, str]:
	"""(email, session id) from a signed, unexpired token; ValueError otherwise."""
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError as exc:
		raise ValueError("bad token") from exc
	email, jti = payload.get("sub"), payload.get("jti")
	if not email or not jti:
		raise ValueError("token is missing sub or jti")
	return email, jti


def _live_session(db: Session, token: str) -> AuthSession:
	unauthorized = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		email, jti = _token_claims(token)
	except ValueError:
		raise unauthorized
	try:
		row = db.get(AuthSession, jti)
	except Exception:
		# Fail closed when the session store is unreachable
		db.rollback()
		logger.exception("session lookup failed")
		raise unauthorized
	if not row or row.email != email:
		raise unauthorized
	return row


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	if db.get(AuthUser, req.email):
		raise HTTPException(status_code=409, detail="email already registered")
	db.add(AuthUser(email=req.email, password_hash=pwd_context.hash(req.password)))
	db.commit()
	logger.info("registered new account")
	return {"ok": True}


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect email or password")
	session_id = uuid.uuid4().hex
	db.add(AuthSession(session_id=session_id, email=user.email))
	db.commit()
	return Token(access_token=create_access_token(user.email, session_id))


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	row = _live_session(db, token)
	row.last_activity_at = datetime.utcnow()
	db.commit()
	return User(email=row.email)


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user


@router.post("/logout")
async def logout(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
	row = _live_session(db, token)
	db.delete(row)
	db.commit()
	return {"ok": True}
