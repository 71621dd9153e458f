# strava_cgm/job_queue.py
# -----------------------------------------------------------------------------
# File de jobs en mémoire (asyncio) pour le traitement des activités Strava.
#
# 🔹 Un seul worker : au plus un job en `processing` à un instant donné.
# 🔹 Chaque tentative est bornée par `processing_timeout` (asyncio.wait_for) ;
#    un dépassement suit le chemin d'échec avec le message "Job timeout".
# 🔹 Échec :
#     - tentatives restantes et erreur réessayable → retour en `pending`,
#       disponible seulement après `retry_delay` secondes ;
#     - sinon → `failed`.
#    Une erreur portant `retryable = False` (identifiants refusés...) échoue
#    tout de suite.
# 🔹 Les jobs `completed` sont oubliés après `completed_ttl` secondes, les
#    jobs `failed` après `failed_ttl` (une heure par défaut).
# 🔹 Ajouter un id déjà présent remplace l'entrée existante.
#
# L'état n'est pas persisté : un redémarrage perd les jobs en cours.
# -----------------------------------------------------------------------------
import asyncio
import contextlib
import datetime as dt
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Processor = Callable[[Any], Awaitable[None]]


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class Job:
    id: str
    payload: Any
    max_attempts: int
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    created_at: dt.datetime = field(default_factory=_utcnow)
    processed_at: Optional[dt.datetime] = None
    last_error: Optional[str] = None
    # instant (horloge de la file) à partir duquel le job peut être repris
    available_at: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "error": self.last_error,
        }


class JobQueue:
    def __init__(
        self,
        processor: Optional[Processor] = None,
        *,
        max_attempts: int = 3,
        retry_delay: float = 10.0,
        processing_timeout: float = 120.0,
        completed_ttl: float = 60.0,
        failed_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._processor = processor
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.processing_timeout = processing_timeout
        self.completed_ttl = completed_ttl
        self.failed_ttl = failed_ttl
        self._clock = clock

        self._jobs: Dict[str, Job] = {}
        self._worker: Optional[asyncio.Task] = None
        self._timers: set = set()
        self._closed = False

    # ----------------------------------------------------------------------
    # API publique
    # ----------------------------------------------------------------------
    def add(self, job_id: str, payload: Any) -> Job:
        if job_id in self._jobs:
            logger.info("[Queue] Job %s déjà présent, entrée remplacée", job_id)
        job = Job(id=job_id, payload=payload, max_attempts=self.max_attempts)
        self._jobs[job_id] = job
        self._kick()
        return job

    def set_processor(self, processor: Processor) -> None:
        self._processor = processor
        self._kick()

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_stats(self) -> Dict[str, int]:
        stats = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        return stats

    async def join(self, poll_interval: float = 0.01) -> None:
        """Attend qu'aucun job ne soit en `pending` ou `processing`."""
        while any(
            j.status in (JobStatus.PENDING, JobStatus.PROCESSING) for j in self._jobs.values()
        ):
            await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        self._closed = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None

    # ----------------------------------------------------------------------
    # Worker
    # ----------------------------------------------------------------------
    def _kick(self) -> None:
        if self._closed or self._processor is None:
            return
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Hors boucle asyncio : le prochain add() / timer relancera le worker
            logger.debug("[Queue] Pas de boucle asyncio active, worker non démarré")
            return
        self._worker = loop.create_task(self._run())

    def _call_later(self, delay: float, callback: Callable, *args) -> None:
        loop = asyncio.get_running_loop()
        handle = None

        def fire():
            self._timers.discard(handle)
            callback(*args)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def _next_ready(self) -> Optional[Job]:
        now = self._clock()
        for job in self._jobs.values():
            if job.status == JobStatus.PENDING and job.available_at <= now:
                return job
        return None

    def _schedule_wakeup(self) -> None:
        waiting = [j.available_at for j in self._jobs.values() if j.status == JobStatus.PENDING]
        if waiting:
            self._call_later(max(0.0, min(waiting) - self._clock()), self._kick)

    async def _run(self) -> None:
        while not self._closed:
            job = self._next_ready()
            if job is None:
                # jobs en attente de retry : on se réveille au plus tôt
                self._schedule_wakeup()
                return
            await self._process(job)

    async def _process(self, job: Job) -> None:
        job.status = JobStatus.PROCESSING
        job.attempts += 1
        logger.info("[Queue] Job %s : tentative %s/%s", job.id, job.attempts, job.max_attempts)

        try:
            await asyncio.wait_for(self._processor(job.payload), timeout=self.processing_timeout)
        except asyncio.TimeoutError:
            self._on_failure(job, "Job timeout", retryable=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._on_failure(job, str(e) or e.__class__.__name__, getattr(e, "retryable", True))
        else:
            job.status = JobStatus.COMPLETED
            job.processed_at = _utcnow()
            logger.info("[Queue] Job %s terminé", job.id)
            self._call_later(self.completed_ttl, self._evict, job)

    def _on_failure(self, job: Job, message: str, retryable: bool) -> None:
        job.last_error = message

        if retryable and job.attempts < job.max_attempts:
            job.status = JobStatus.PENDING
            job.available_at = self._clock() + self.retry_delay
            logger.warning(
                "[Queue] Job %s en échec (tentative %s/%s) : %s",
                job.id, job.attempts, job.max_attempts, message,
            )
            return

        job.status = JobStatus.FAILED
        job.processed_at = _utcnow()
        logger.error(
            "[Queue] Job %s abandonné après %s tentative(s) : %s", job.id, job.attempts, message
        )
        self._call_later(self.failed_ttl, self._evict, job)

    def _evict(self, job: Job) -> None:
        # l'id a pu être réutilisé entre-temps : on ne retire que ce job-là
        if self._jobs.get(job.id) is job:
            del self._jobs[job.id]
