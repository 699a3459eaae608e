"""
Storage manager: retry, fallback and multi-backend replication.

Features:
- Sequential retries per backend with exponential backoff
- Ordered fallback across backends for single-backend uploads
- Concurrent replication to several backends (success if any succeeds)
- Caller-supplied deadline that never abandons an in-flight provider call
- Delete classification (immutable vs transient), never retried
"""

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from packages.shared.storage.base import (
    FileUpload,
    StorageBackend,
    StorageProvider,
    UploadOptions,
    UploadResult,
)
from packages.shared.storage.errors import (
    AggregateUploadError,
    DeleteError,
    DeleteErrorKind,
    ImmutableBackendViolation,
    ProviderUnavailable,
    StorageError,
    TransientUploadFailure,
    UploadError,
    UploadTimeout,
)

logger = logging.getLogger(__name__)


@dataclass
class StorageManagerConfig:
    """Retry and fallback policy."""

    default_backend: StorageBackend = StorageBackend.S3
    fallback_backends: list[StorageBackend] = field(default_factory=list)
    max_retries: int = 3
    retry_delay: float = 1.0  # Seconds; doubled after every failed attempt


@dataclass
class ReplicationOutcome:
    """Per-backend results of a replicated upload."""

    results: list[UploadResult]
    failures: dict[StorageBackend, StorageError] = field(default_factory=dict)

    @property
    def backends(self) -> list[StorageBackend]:
        return [r.provider for r in self.results]

    @property
    def is_partial(self) -> bool:
        return bool(self.results) and bool(self.failures)


class StorageManager:
    """
    Orchestrates storage providers.

    Constructed once per process with explicit configuration and passed to
    callers; there is no module-level instance.
    """

    def __init__(
        self,
        providers: Iterable[StorageProvider] = (),
        config: StorageManagerConfig | None = None,
    ):
        self.config = config or StorageManagerConfig()
        self._providers: dict[StorageBackend, StorageProvider] = {}
        for provider in providers:
            self.register(provider)

    # ==========================================================================
    # Provider Registry
    # ==========================================================================

    def register(self, provider: StorageProvider) -> None:
        """Register (or replace) the provider for its backend."""
        self._providers[provider.name] = provider

    def get_provider(self, backend: StorageBackend | str) -> StorageProvider | None:
        return self._providers.get(StorageBackend(backend))

    def is_provider_available(self, backend: StorageBackend | str) -> bool:
        provider = self.get_provider(backend)
        return provider is not None and provider.is_available()

    def available_backends(self) -> list[StorageBackend]:
        return [name for name, p in self._providers.items() if p.is_available()]

    async def aclose(self) -> None:
        """Release provider HTTP clients."""
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

    def get_url(self, backend: StorageBackend | str, key: str) -> str:
        provider = self.get_provider(backend)
        if provider is None:
            raise ProviderUnavailable("No provider registered", provider=StorageBackend(backend).value)
        return provider.get_url(key)

    async def download(self, backend: StorageBackend | str, key: str) -> bytes:
        provider = self.get_provider(backend)
        if provider is None:
            raise ProviderUnavailable("No provider registered", provider=StorageBackend(backend).value)
        return await provider.download(key)

    # ==========================================================================
    # Upload
    # ==========================================================================

    async def upload(
        self,
        file: FileUpload,
        backends: StorageBackend | str | Sequence[StorageBackend] | None = None,
        options: UploadOptions | None = None,
        timeout: float | None = None,
    ) -> UploadResult | list[UploadResult]:
        """
        Upload a file to one backend (with fallback) or to several (replicated).

        Args:
            file: File to upload
            backends: A single backend, a list of backends, or None for the default
            options: Upload options
            timeout: Deadline in seconds for the whole logical upload

        Returns:
            UploadResult for a single backend, list of UploadResult for several

        Raises:
            UploadError: Single-backend upload exhausted retries and fallbacks
            UploadTimeout: Deadline passed
            AggregateUploadError: Every backend of a replicated upload failed
        """
        if backends is None or isinstance(backends, str):
            backend = StorageBackend(backends) if backends else self.config.default_backend
            return await self.upload_single(file, backend, options, timeout)

        outcome = await self.replicate(file, backends, options, timeout)
        return outcome.results

    async def upload_single(
        self,
        file: FileUpload,
        backend: StorageBackend,
        options: UploadOptions | None = None,
        timeout: float | None = None,
    ) -> UploadResult:
        """Upload to one backend, walking the configured fallbacks on failure."""
        options = options or UploadOptions()
        deadline = self._deadline(timeout)

        candidates = [backend] + [b for b in self.config.fallback_backends if b != backend]
        last_error: StorageError | None = None
        last_provider = backend.value
        attempts = 0

        for index, candidate in enumerate(candidates):
            provider = self._providers.get(candidate)
            if provider is None or not provider.is_available():
                logger.warning(f"[{candidate.value}] Provider unavailable, skipping")
                last_error = ProviderUnavailable(provider=candidate.value)
                continue

            if index > 0:
                logger.warning(f"[{candidate.value}] Falling back from {backend.value}")

            last_provider = candidate.value
            try:
                result = await self._upload_with_retry(provider, file, options, deadline)
            except UploadTimeout:
                raise
            except ProviderUnavailable as e:
                last_error = e
                continue
            except UploadError as e:
                attempts += e.attempts
                last_error = e.cause if isinstance(e.cause, StorageError) else e
                continue

            if index > 0:
                logger.info(f"[{candidate.value}] Fallback upload succeeded for {file.filename}")
            return result

        if attempts == 0:
            message = "No storage backend available"
        else:
            message = f"Upload failed on all backends after {attempts} attempts"
        logger.error(f"{message}: {file.filename} (last cause: {last_error})")
        raise UploadError(message, provider=last_provider, cause=last_error, attempts=attempts)

    async def replicate(
        self,
        file: FileUpload,
        backends: Sequence[StorageBackend | str],
        options: UploadOptions | None = None,
        timeout: float | None = None,
    ) -> ReplicationOutcome:
        """
        Upload the same file to several backends concurrently.

        Each backend retries on its own; there is no fallback. Succeeds when at
        least one backend succeeds.

        Raises:
            AggregateUploadError: Every backend failed
        """
        options = options or UploadOptions()
        deadline = self._deadline(timeout)

        targets: list[StorageBackend] = []
        for b in backends:
            b = StorageBackend(b)
            if b not in targets:
                targets.append(b)

        async def upload_to(backend: StorageBackend) -> UploadResult:
            provider = self._providers.get(backend)
            if provider is None or not provider.is_available():
                raise ProviderUnavailable(provider=backend.value)
            return await self._upload_with_retry(provider, file, options, deadline)

        settled = await asyncio.gather(
            *(upload_to(b) for b in targets),
            return_exceptions=True,
        )

        outcome = ReplicationOutcome(results=[])
        for backend, item in zip(targets, settled):
            if isinstance(item, UploadResult):
                outcome.results.append(item)
            elif isinstance(item, StorageError):
                outcome.failures[backend] = item
            elif isinstance(item, Exception):
                outcome.failures[backend] = UploadError(
                    f"Unexpected upload failure: {item}", provider=backend.value, cause=item
                )
            else:
                raise item

        if not outcome.results:
            logger.error(f"Replicated upload failed on every backend: {file.filename}")
            raise AggregateUploadError(list(outcome.failures.values()))

        if outcome.failures:
            failed = ", ".join(b.value for b in outcome.failures)
            logger.warning(f"Partial replication for {file.filename}; failed on: {failed}")
        return outcome

    async def _upload_with_retry(
        self,
        provider: StorageProvider,
        file: FileUpload,
        options: UploadOptions,
        deadline: float | None,
    ) -> UploadResult:
        """Retry one provider sequentially with exponential backoff."""
        name = provider.name.value
        max_retries = max(1, self.config.max_retries)
        last_error: StorageError | None = None

        for attempt in range(1, max_retries + 1):
            self._check_deadline(deadline, name, last_error)

            try:
                result = await provider.upload(file, options)
            except ProviderUnavailable:
                raise
            except StorageError as e:
                last_error = e
            except Exception as e:
                last_error = TransientUploadFailure(str(e), provider=name, cause=e)
            else:
                if deadline is not None and self._now() > deadline:
                    # Attempt finished after the deadline; hand the object back for cleanup
                    raise UploadTimeout(provider=name, late_result=result)
                return result

            if attempt < max_retries:
                delay = self.config.retry_delay * 2 ** (attempt - 1)
                if deadline is not None and self._now() + delay > deadline:
                    raise UploadTimeout(provider=name)
                logger.warning(
                    f"[{name}] Upload attempt {attempt}/{max_retries} failed: {last_error}; "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        raise UploadError(
            f"Upload failed after {max_retries} attempts",
            provider=name,
            cause=last_error,
            attempts=max_retries,
        )

    # ==========================================================================
    # Delete
    # ==========================================================================

    async def delete(self, backend: StorageBackend | str, key: str) -> None:
        """
        Delete an object with a single provider call.

        Raises:
            DeleteError: kind IMMUTABLE for write-once backends, TRANSIENT otherwise
        """
        backend = StorageBackend(backend)
        provider = self._providers.get(backend)
        if provider is None:
            raise DeleteError(
                "No provider registered", backend.value, key, DeleteErrorKind.TRANSIENT
            )

        try:
            await provider.delete(key)
        except ImmutableBackendViolation as e:
            raise DeleteError(str(e), backend.value, key, DeleteErrorKind.IMMUTABLE, cause=e) from e
        except Exception as e:
            raise DeleteError(str(e), backend.value, key, DeleteErrorKind.TRANSIENT, cause=e) from e

    # ==========================================================================
    # Deadline Helpers
    # ==========================================================================

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()

    def _deadline(self, timeout: float | None) -> float | None:
        return self._now() + timeout if timeout is not None else None

    def _check_deadline(
        self,
        deadline: float | None,
        provider: str,
        cause: StorageError | None,
    ) -> None:
        if deadline is not None and self._now() >= deadline:
            error = UploadTimeout(provider=provider)
            error.cause = cause
            raise error
