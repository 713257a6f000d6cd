"""
Vercel KV integration for pipeline state.
Ledger accounts, segments, jobs and idempotency results persist here so they
survive across serverless function invocations. Without KV credentials an
in-memory dict is used instead (local development and tests).

Several app instances share one KV, so any read-check-write that must not
interleave goes through ``compare_and_set`` (a Lua script run with EVAL).
"""
import os
import json
import asyncio
import httpx
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from .errors import KVError
from .models import JobRecord

logger = logging.getLogger(__name__)

# ARGV: [expect_absent ("1"/"0"), expected value, new value]
COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '1' then
  if current then return 0 end
elseif current ~= ARGV[2] then
  return 0
end
redis.call('SET', KEYS[1], ARGV[3])
return 1
"""


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def __call__(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class KVStorage:
    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.kv_rest_api_url = url if url is not None else os.getenv("KV_REST_API_URL")
        self.kv_rest_api_token = token if token is not None else os.getenv("KV_REST_API_TOKEN")
        self._transport = transport
        self._memory: Dict[str, str] = {}
        self._lists: Dict[str, List[str]] = {}
        self._sets: Dict[str, Set[str]] = {}

        if not self.kv_rest_api_url or not self.kv_rest_api_token:
            logger.warning("KV storage not configured - falling back to in-memory storage")
            self.enabled = False
        else:
            self.enabled = True
            logger.info("KV storage enabled")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.kv_rest_api_token}",
            "Content-Type": "application/json"
        }

    async def _command(self, command: str, args: list) -> Any:
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.post(
                    f"{self.kv_rest_api_url}/{command}",
                    headers=self._headers(),
                    json=args
                )
                response.raise_for_status()
                return response.json().get("result")
        except httpx.HTTPError as e:
            logger.error(f"KV {command} failed for {args[0]}: {e}")
            raise KVError(f"KV {command} failed: {e}", {"key": args[0]}) from e

    async def get(self, key: str) -> Optional[str]:
        if not self.enabled:
            return self._memory.get(key)
        return await self._command("get", [key])

    async def set(self, key: str, value: str) -> None:
        if not self.enabled:
            self._memory[key] = value
            return
        await self._command("set", [key, value])

    async def delete(self, key: str) -> None:
        if not self.enabled:
            self._memory.pop(key, None)
            return
        await self._command("del", [key])

    async def eval(self, script: str, keys: List[str], args: List[str]) -> Any:
        """Run a Lua script atomically on the KV server."""
        if not self.enabled:
            raise KVError("EVAL needs a configured KV backend", {"key": keys[0] if keys else None})
        return await self._command("eval", [script, len(keys), *keys, *args])

    async def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        """Write ``value`` only if the key still holds ``expected`` (None: the key must not exist)."""
        if not self.enabled:
            # no await between the read and the write, so nothing can interleave
            if self._memory.get(key) != expected:
                return False
            self._memory[key] = value
            return True
        result = await self.eval(
            COMPARE_AND_SET_SCRIPT,
            [key],
            ["1" if expected is None else "0", expected or "", value],
        )
        return int(result or 0) == 1

    async def rpush(self, key: str, value: str) -> int:
        """Append to a list and return its new length."""
        if not self.enabled:
            items = self._lists.setdefault(key, [])
            items.append(value)
            return len(items)
        return int(await self._command("rpush", [key, value]))

    async def lrange(self, key: str) -> List[str]:
        if not self.enabled:
            return list(self._lists.get(key, []))
        return await self._command("lrange", [key, 0, -1]) or []

    async def sadd(self, key: str, value: str) -> None:
        if not self.enabled:
            self._sets.setdefault(key, set()).add(value)
            return
        await self._command("sadd", [key, value])

    async def smembers(self, key: str) -> List[str]:
        if not self.enabled:
            return sorted(self._sets.get(key, set()))
        return await self._command("smembers", [key]) or []

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any) -> None:
        await self.set(key, json.dumps(value))

    async def set_job(self, job: JobRecord) -> None:
        """Store job data in KV"""
        await self.set(f"job:{job.job_id}", job.model_dump_json())
        logger.info(f"Stored job {job.job_id} in KV")

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Retrieve job data from KV"""
        raw = await self.get(f"job:{job_id}")
        if raw is None:
            logger.info(f"Job {job_id} not found in KV")
            return None
        return JobRecord.model_validate_json(raw)

    async def update_job_status(self, job_id: str, status: str, error: str = None, **kwargs) -> Optional[JobRecord]:
        """Update job status in KV"""
        job = await self.get_job(job_id)
        if not job:
            logger.error(f"Cannot update job {job_id} - not found in KV")
            return None

        updates: Dict[str, Any] = {"status": status, **kwargs}
        if error:
            updates["error"] = error
        job = job.model_copy(update=updates)
        await self.set_job(job)
        return job


# Global KV instance
kv = KVStorage()
