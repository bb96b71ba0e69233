from __future__ import annotations
import enum
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Text, UniqueConstraint
from .db import Base


class Subject(str, enum.Enum):
	MATHS = "MATHS"
	MIDGE = "MIDGE"
	DATABASE_SYSTEMS = "DATABASE_SYSTEMS"


class Level(str, enum.Enum):
	BEGINNER = "BEGINNER"
	INTERMEDIATE = "INTERMEDIATE"
	ADVANCED = "ADVANCED"


class Degree(str, enum.Enum):
	BACHELORS = "BACHELORS"
	MASTERS = "MASTERS"
	PHD = "PHD"


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is the email the rest of the app uses as identity
	email = Column(String(256), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# One row per issued token (its jti); deleting the row revokes the token
	session_id = Column(String(64), primary_key=True)
	email = Column(String(256), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class UserProfile(Base):
	__tablename__ = "user_profiles"
	email = Column(String(256), primary_key=True, index=True)
	student_id = Column(String(16), nullable=True)  # c + 8 digits once onboarded
	degree = Column(String(16), default=Degree.BACHELORS.value, nullable=False)
	degree_name = Column(String(256), nullable=True)
	goals = Column(Text, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class SubjectLevel(Base):
	__tablename__ = "subject_levels"
	__table_args__ = (UniqueConstraint("email", "subject", name="uq_subject_levels_email_subject"),)
	id = Column(Integer, primary_key=True, autoincrement=True)
	email = Column(String(256), nullable=False, index=True)
	subject = Column(String(32), nullable=False)
	level = Column(String(16), default=Level.BEGINNER.value, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Document(Base):
	__tablename__ = "documents"
	id = Column(Integer, primary_key=True, autoincrement=True)
	owner_email = Column(String(256), nullable=True, index=True)
	subject = Column(String(32), nullable=False, index=True)
	level = Column(String(16), nullable=False)
	filename = Column(String(512), nullable=False)
	mime_type = Column(String(128), nullable=False)
	text_content = Column(Text, nullable=False, default="")
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Interaction(Base):
	__tablename__ = "interactions"
	id = Column(Integer, primary_key=True, autoincrement=True)
	email = Column(String(256), nullable=False, index=True)
	subject = Column(String(32), nullable=False)
	level = Column(String(16), nullable=False)
	prompt = Column(Text, nullable=False, default="")
	answer = Column(Text, nullable=True)
	used_doc_ids_json = Column(Text, nullable=True)  # JSON list of document ids
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class QuizAttempt(Base):
	__tablename__ = "quiz_attempts"
	id = Column(Integer, primary_key=True, autoincrement=True)
	email = Column(String(256), nullable=False, index=True)
	subject = Column(String(32), nullable=False, index=True)
	items_json = Column(Text, nullable=False)  # JSON list of six quiz items
	responses_json = Column(Text, nullable=True)  # JSON object: item index -> chosen index
	score = Column(Integer, nullable=False, default=0)
	max_score = Column(Integer, nullable=False, default=0)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
