from __future__ import annotations
import logging
import httpx
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, TypeVar
from .settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

Message = Dict[str, str]


class UpstreamDegraded(RuntimeError):
	"""The model API was unreachable, refused the call, or answered in an unexpected shape."""


def message(role: str, content: str) -> Message:
	return {"role": role, "content": content}


class ChatCompletionClient:
	def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
		self.api_key = api_key or settings.openai_api_key
		if not self.api_key:
			raise ValueError("OPENAI_API_KEY is not configured")
		self.model = model or settings.openai_model
		self.base_url = base_url or settings.openai_base_url
		self._client = httpx.AsyncClient(timeout=settings.llm_timeout_seconds)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._fallback_enabled = bool(settings.openrouter_api_key)
		self._openrouter_api_key = settings.openrouter_api_key
		self._openrouter_model = settings.openrouter_model
		self._openrouter_base_url = settings.openrouter_base_url
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		if self._fallback_enabled:
			self._fallback_client = httpx.AsyncClient(timeout=settings.llm_timeout_seconds)

	async def complete(
		self,
		messages: List[Message],
		*,
		temperature: float = 0.2,
		json_mode: bool = False,
	) -> str:
		payload: Dict[str, Any] = {
			"model": self.model,
			"temperature": temperature,
			"messages": messages,
		}
		if json_mode:
			payload["response_format"] = {"type": "json_object"}
		headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
		last_error: Optional[Exception] = None
		try:
			r = await self._client.post(self.base_url, headers=headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			if json_mode:
				# Some compatible providers reject response_format; retry once without it
				fallback_payload = dict(payload)
				fallback_payload.pop("response_format", None)
				try:
					r = await self._client.post(self.base_url, headers=headers, json=fallback_payload)
					r.raise_for_status()
				except Exception as err:
					last_error = err
			else:
				last_error = http_err
		except httpx.RequestError as net_err:
			last_error = net_err
		if last_error is None:
			try:
				data = r.json()
				return data["choices"][0]["message"]["content"] or ""
			except Exception:
				last_error = UpstreamDegraded(f"Unexpected completion response: {r.text[:200]}")
		if not self._fallback_enabled:
			raise UpstreamDegraded(str(last_error)) from last_error
		return await self._fallback_complete(payload, last_error)

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_complete(self, payload: Dict[str, Any], primary_error: Optional[Exception]) -> str:
		if not self._fallback_client or not self._openrouter_api_key:
			raise UpstreamDegraded("Fallback requested but OpenRouter is not configured") from primary_error
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		fallback_payload = {**payload, "model": self._openrouter_model}
		fallback_payload.pop("response_format", None)
		try:
			r = await self._fallback_client.post(
				self._openrouter_base_url,
				headers=headers,
				json=fallback_payload,
			)
			r.raise_for_status()
			data = r.json()
			return data["choices"][0]["message"]["content"] or ""
		except Exception as fallback_err:
			raise UpstreamDegraded(
				f"Primary completion failed ({primary_error}); fallback via OpenRouter also failed"
			) from fallback_err


async def get_chat_client() -> AsyncIterator[Optional[ChatCompletionClient]]:
	"""Request-scoped model client; None when no API key is configured."""
	if not settings.openai_api_key:
		yield None
		return
	client = ChatCompletionClient()
	try:
		yield client
	finally:
		await client.aclose()


async def structured_completion(
	client: Optional[ChatCompletionClient],
	messages: List[Message],
	*,
	parse: Callable[[str], Optional[T]],
	fallback: T,
	temperature: float = 0.2,
	json_mode: bool = False,
	attempts: int = 1,
	label: str = "completion",
) -> T:
	"""Call the model and parse its reply, returning ``fallback`` instead of failing.

	``parse`` receives the raw completion text and returns ``None`` when the
	reply is unusable. Each attempt is an independent model call; the first
	usable parse wins. Any error raised by the call and any unusable reply
	count as a failed attempt, and the deterministic ``fallback`` is returned once all
	attempts are spent (or immediately when no client is configured).
	"""
	if client is None:
		return fallback
	for attempt in range(1, attempts + 1):
		try:
			raw = await client.complete(messages, temperature=temperature, json_mode=json_mode)
		except Exception as exc:
			logger.warning("%s: model call failed (attempt %d/%d): %s", label, attempt, attempts, exc)
			continue
		try:
			parsed = parse(raw)
		except Exception as exc:
			logger.warning("%s: model reply could not be parsed (attempt %d/%d): %r", label, attempt, attempts, exc)
			continue
		if parsed is not None:
			return parsed
		logger.warning("%s: unusable model reply (attempt %d/%d)", label, attempt, attempts)
	return fallback
