"""Deep research engine: phase state machine and session API.

A session moves strictly forward through

    INITIAL_ANALYSIS -> MULTI_DIMENSIONAL_RESEARCH -> DEEP_DIVE ->
    CROSS_REFERENCE -> SYNTHESIS -> REPORT_GENERATION -> DONE

Questions are researched in priority-ordered batches; the engine waits for a
whole batch (bounded by ``session.batch_timeout``) before starting the next,
so peak provider load is the batch size. Cancellation and the processing-time
deadline are cooperative: they are checked between phases, between batches
and by the supervisor between query tiers. A stopped session still produces
a Result, assembled from deterministic fallbacks.

Sessions started with ``start()`` run in a daemon thread that owns its own
event loop, which works from synchronous callers such as REST or CLI
handlers. ``run()`` executes a session in the caller's loop instead.
"""

import asyncio
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from deepresearch.config import EngineSettings
from deepresearch.core.background_task import BackgroundTask
from deepresearch.core.concurrency import ConcurrencyLimiter
from deepresearch.core.resilience import CircuitBreaker
from deepresearch.errors import ConfigurationError, SessionCancelled
from deepresearch.logging_config import bind_session
from deepresearch.research.chunker import ContextAwareChunker
from deepresearch.research.collaborators import CompletionClient, KnowledgeStore, SearchClient
from deepresearch.research.context import SessionContext
from deepresearch.research.knowledge import InMemoryKnowledgeStore
from deepresearch.research.models import (
    CitationResult,
    Progress,
    ResearchConfig,
    ResearchMetrics,
    ResearchPhase,
    ResearchQuestion,
    ResearchResult,
    UserProfile,
)
from deepresearch.research.pipeline import attempt, attempt_sync
from deepresearch.research.progress import ProgressTracker
from deepresearch.research.quality import QualityAnalyzer
from deepresearch.research.questions import QuestionGenerator
from deepresearch.research.strategies import ResearchStrategy, StrategyRegistry
from deepresearch.research.supervisor import ResearchSupervisor, StopCheck
from deepresearch.research.synthesizer import HierarchicalSynthesizer

logger = logging.getLogger(__name__)

SESSION_ID_PREFIX = "deep-research"
FALLBACK_CRITICAL_AREAS = (
    "implementation details",
    "best practices and guidelines",
    "challenges and limitations",
)
PREFERRED_DOMAIN_BOOST = 0.1


def new_session_id() -> str:
    """``deep-research-<epoch ms>-<4 hex>``."""
    return f"{SESSION_ID_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(2)}"


def apply_domain_preferences(
    citations: list[CitationResult], preferred_domains: list[str]
) -> list[CitationResult]:
    """Boost evidence whose host or text mentions a preferred domain."""
    if not preferred_domains:
        return citations
    wanted = [d.lower() for d in preferred_domains if d.strip()]
    boosted = []
    for citation in citations:
        if any(d in citation.domain or d in citation.text_for_matching for d in wanted):
            citation = citation.with_score(
                citation.relevance_score + PREFERRED_DOMAIN_BOOST, preferred_domain=True
            )
        boosted.append(citation)
    boosted.sort(key=lambda c: c.relevance_score, reverse=True)
    return boosted


@dataclass
class ResearchSession:
    """Everything the engine tracks for one session."""

    session_id: str
    context: SessionContext
    progress: ProgressTracker
    strategy: ResearchStrategy
    task: BackgroundTask
    breaker: CircuitBreaker
    result: Optional[ResearchResult] = None
    expires_at: Optional[float] = None
    retrying: set[str] = field(default_factory=set)

    @property
    def finished(self) -> bool:
        return self.result is not None


class DeepResearchEngine:
    """Runs research sessions and exposes the session management API.

    The strategy registry, knowledge store and settings are injected; the
    engine owns its session map, which is keyed by session id and guarded by
    one lock. Finished sessions stay queryable for
    ``session.retention_seconds`` (``cancel_grace_seconds`` when cancelled)
    and are evicted lazily on the next API call.

    Example:
        >>> engine = DeepResearchEngine(completion, search)
        >>> session_id = engine.start("event sourcing")
        >>> engine.get_progress(session_id).percentage
        >>> result = engine.wait(session_id, timeout=600)
    """

    def __init__(
        self,
        completion: CompletionClient,
        search: SearchClient,
        *,
        knowledge: Optional[KnowledgeStore] = None,
        strategies: Optional[StrategyRegistry] = None,
        settings: Optional[EngineSettings] = None,
        quality: Optional[QualityAnalyzer] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.settings.validate()
        completion_timeout = self.settings.session.completion_timeout

        self.completion = completion
        self.search = search
        self.knowledge = (
            knowledge
            if knowledge is not None
            else InMemoryKnowledgeStore.from_settings(self.settings.storage)
        )
        self.chunker = ContextAwareChunker(
            context_limit=self.settings.synthesis.context_limit,
            response_reserve=self.settings.synthesis.response_reserve,
        )
        self.synthesizer = HierarchicalSynthesizer(
            completion,
            chunker=self.chunker,
            settings=self.settings.synthesis,
            completion_timeout=completion_timeout,
        )
        self.strategies = strategies or StrategyRegistry.with_defaults(
            completion,
            knowledge=self.knowledge,
            synthesizer=self.synthesizer,
            chunker=self.chunker,
            completion_timeout=completion_timeout,
        )
        self.quality = quality or QualityAnalyzer()
        self.question_generator = QuestionGenerator(completion, completion_timeout)
        self.supervisor = ResearchSupervisor(
            completion,
            search,
            quality=self.quality,
            settings=self.settings.search,
            chunker=self.chunker,
            completion_timeout=completion_timeout,
        )

        self._sessions: dict[str, ResearchSession] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Session API
    # =========================================================================

    def start(
        self,
        query: str,
        profile: Optional[UserProfile] = None,
        config: Optional[ResearchConfig] = None,
    ) -> str:
        """Start a session in a background thread and return its id.

        Raises:
            ConfigurationError: If the query is blank or the config invalid.
                Nothing has been started when this is raised.
        """
        self._evict_expired()
        session = self._create_session(query, profile, config)

        thread = threading.Thread(
            target=self._run_in_thread,
            args=(session,),
            name=session.session_id,
            daemon=True,
        )
        session.task.thread = thread
        thread.start()
        logger.info("Started research session %s for %r", session.session_id, query)
        return session.session_id

    async def run(
        self,
        query: str,
        profile: Optional[UserProfile] = None,
        config: Optional[ResearchConfig] = None,
    ) -> ResearchResult:
        """Run a session to completion in the current event loop.

        Raises:
            ConfigurationError: If the query is blank or the config invalid.
        """
        self._evict_expired()
        session = self._create_session(query, profile, config)
        return await self._execute(session)

    def wait(self, session_id: str, timeout: Optional[float] = None) -> Optional[ResearchResult]:
        """Block until the session finishes; None if unknown or still running."""
        session = self._get_session(session_id)
        if session is None:
            return None
        session.task.wait(timeout)
        return session.result

    def get_progress(self, session_id: str) -> Optional[Progress]:
        self._evict_expired()
        session = self._get_session(session_id)
        return session.progress.snapshot() if session is not None else None

    def get_result(self, session_id: str) -> Optional[ResearchResult]:
        """The finished Result, or None while the session is not ready.

        Results of evicted sessions are still served from the knowledge
        store when it persisted them.
        """
        self._evict_expired()
        session = self._get_session(session_id)
        if session is not None:
            return session.result
        lookup = getattr(self.knowledge, "get_result", None)
        if lookup is None:
            return None
        try:
            return lookup(session_id)
        except Exception as exc:
            logger.warning("Result lookup for %s failed: %s", session_id, exc)
            return None

    def cancel(self, session_id: str) -> bool:
        """Request cooperative cancellation.

        Returns:
            True if the request was recorded; False for unknown or finished
            sessions and for repeated requests.
        """
        self._evict_expired()
        session = self._get_session(session_id)
        if session is None or session.finished:
            return False
        if not session.task.request_cancel():
            return False
        session.progress.update_activity("Cancellation requested")
        logger.info("Cancellation requested for session %s", session_id)
        return True

    def retry_question(self, session_id: str, question_id: str) -> bool:
        """Research one question again in the background without moving the phase.

        Returns:
            False for unknown sessions or questions, cancelled sessions, and
            while a retry of the same question is still running.
        """
        self._evict_expired()
        session = self._get_session(session_id)
        if session is None or session.task.is_cancelled:
            return False
        question = session.context.get_question(question_id)
        if question is None:
            return False
        with self._lock:
            if question_id in session.retrying:
                return False
            session.retrying.add(question_id)

        thread = threading.Thread(
            target=self._run_retry_in_thread,
            args=(session, question),
            name=f"{session_id}-retry",
            daemon=True,
        )
        thread.start()
        logger.info("Retrying question %s in session %s", question_id, session_id)
        return True

    def active_sessions(self) -> list[str]:
        """Ids of sessions that have not finished yet."""
        self._evict_expired()
        with self._lock:
            return [sid for sid, s in self._sessions.items() if not s.finished]

    def cleanup_expired_sessions(self) -> int:
        """Evict finished sessions past their retention window.

        Returns:
            Number of sessions removed
        """
        return self._evict_expired()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every running session and wait for their threads."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            if not session.finished:
                session.task.request_cancel()
        for session in sessions:
            if session.task.thread is not None:
                session.task.thread.join(timeout)
        logger.info("Engine shut down (%d sessions)", len(sessions))

    # =========================================================================
    # Session bookkeeping
    # =========================================================================

    def _create_session(
        self,
        query: str,
        profile: Optional[UserProfile],
        config: Optional[ResearchConfig],
    ) -> ResearchSession:
        if not query or not query.strip():
            raise ConfigurationError("query must not be empty", field="query")
        config = config or ResearchConfig()
        config.validate_for_session()
        profile = profile or UserProfile()

        session_id = new_session_id()
        with self._lock:
            while session_id in self._sessions:
                session_id = new_session_id()
            session = ResearchSession(
                session_id=session_id,
                context=SessionContext(session_id, query.strip(), profile, config),
                progress=ProgressTracker(session_id),
                strategy=self.strategies.select(query, profile),
                task=BackgroundTask(session_id, timeout=config.max_processing_time),
                breaker=self.supervisor.new_breaker(f"search:{session_id}"),
            )
            self._sessions[session_id] = session
        return session

    def _get_session(self, session_id: str) -> Optional[ResearchSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def _evict_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            expired = [
                sid
                for sid, s in self._sessions.items()
                if s.expires_at is not None and s.expires_at <= now and not s.retrying
            ]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.debug("Evicted %d expired sessions", len(expired))
        return len(expired)

    def _checkpoint(self, session: ResearchSession, *, enforce_deadline: bool = True) -> None:
        """Raise SessionCancelled if the session was cancelled or ran out of time."""
        if session.task.is_cancelled:
            raise SessionCancelled(session.session_id, "cancelled")
        if enforce_deadline and (
            session.context.elapsed_seconds > session.context.config.max_processing_time
        ):
            raise SessionCancelled(session.session_id, "deadline")

    # =========================================================================
    # Thread entry points
    # =========================================================================

    def _run_in_thread(self, session: ResearchSession) -> None:
        """Thread target that runs the session in a fresh event loop."""
        try:
            asyncio.run(self._execute(session))
        except Exception as exc:
            logger.exception("Background session %s failed: %s", session.session_id, exc)
            session.task.mark_failed(str(exc))
            session.progress.record_error(f"Session failed: {exc}")
            session.progress.finish(cancelled=session.task.is_cancelled)
            self._schedule_expiry(session)

    def _run_retry_in_thread(self, session: ResearchSession, question: ResearchQuestion) -> None:
        try:
            with bind_session(session.session_id):
                asyncio.run(self._retry(session, question))
        except Exception as exc:
            logger.exception("Retry of %s failed: %s", question.id, exc)
            session.progress.record_error(f"Retry failed for '{question.text}': {exc}")
        finally:
            with self._lock:
                session.retrying.discard(question.id)

    # =========================================================================
    # Phase state machine
    # =========================================================================

    async def _execute(self, session: ResearchSession) -> ResearchResult:
        """Run all phases; always returns a Result."""
        outputs: dict[str, str] = {}
        stop_reason: Optional[str] = None
        with bind_session(session.session_id):
            logger.info(
                "Research session %s using %s strategy",
                session.session_id,
                session.strategy.display_name,
            )
            try:
                await self._run_phases(session, outputs)
            except SessionCancelled as exc:
                stop_reason = exc.reason
                session.progress.record_error(
                    f"Research stopped early ({exc.reason}) during {session.progress.phase.value}"
                )
            except Exception as exc:
                logger.exception("Research session failed during %s", session.progress.phase.value)
                session.progress.record_error(f"{session.progress.phase.value}: {exc}")
            return self._finish(session, outputs, stop_reason)

    async def _run_phases(self, session: ResearchSession, outputs: dict[str, str]) -> None:
        context = session.context
        progress = session.progress
        config = context.config
        strategy = session.strategy

        # Phase 1: initial analysis
        progress.start_phase(ResearchPhase.INITIAL_ANALYSIS, "Generating research questions")
        questions, note = await self.question_generator.generate_or_fallback(
            context.original_query, context.user_profile, config
        )
        if note:
            progress.record_error(note)
        context.add_questions(questions)
        progress.set_question_counts(len(context.questions), 0)
        progress.complete_phase(ResearchPhase.INITIAL_ANALYSIS)
        self._checkpoint(session)

        # Phase 2: multi-dimensional research
        progress.start_phase(
            ResearchPhase.MULTI_DIMENSIONAL_RESEARCH,
            f"Researching {len(context.questions)} questions",
        )
        await self._research_batches(session, context.questions, deep=False)
        progress.complete_phase(ResearchPhase.MULTI_DIMENSIONAL_RESEARCH)
        self._checkpoint(session)

        # Phase 3: deep dive
        progress.start_phase(ResearchPhase.DEEP_DIVE, "Identifying critical areas")
        if not config.enable_deep_dive:
            progress.update_activity("Deep dive disabled")
        elif len(context.all_citations()) >= config.max_sources:
            logger.info("Source limit of %d reached, skipping deep dive", config.max_sources)
            progress.update_activity("Source limit reached")
        else:
            follow_ups = context.add_questions(await self._plan_deep_dive(session))
            progress.set_question_counts(len(context.questions), context.researched_count)
            await self._research_batches(session, follow_ups, deep=True)
        progress.complete_phase(ResearchPhase.DEEP_DIVE)
        self._checkpoint(session)

        # Phase 4: cross reference
        progress.start_phase(ResearchPhase.CROSS_REFERENCE, "Cross-referencing findings")
        relationships = attempt_sync(
            lambda: strategy.analyze_cross_references(context), stage="cross reference"
        )
        context.add_relationships(relationships.unwrap_or({}))
        if config.enable_cross_validation:
            issues = attempt_sync(
                lambda: strategy.validate_consistency(context), stage="consistency check"
            )
            if not issues.ok:
                progress.record_error(issues.describe_error())
            context.add_inconsistencies(issues.unwrap_or([]))
        progress.complete_phase(ResearchPhase.CROSS_REFERENCE)
        self._checkpoint(session)

        # Phase 5: synthesis
        progress.start_phase(ResearchPhase.SYNTHESIS, "Synthesizing knowledge")
        synthesis = await attempt(strategy.synthesize_knowledge(context), stage="synthesis")
        outputs["synthesis"] = synthesis.unwrap_or_else(
            lambda _: strategy.fallback_synthesis(context)
        )
        progress.complete_phase(ResearchPhase.SYNTHESIS)
        self._checkpoint(session)

        # Phase 6: report
        progress.start_phase(ResearchPhase.REPORT_GENERATION, "Generating final report")
        report = await attempt(
            strategy.generate_final_report(context, outputs["synthesis"]),
            stage="report generation",
        )
        outputs["report"] = report.unwrap_or_else(
            lambda _: strategy.fallback_report(context, outputs["synthesis"])
        )

    async def _plan_deep_dive(self, session: ResearchSession) -> list[ResearchQuestion]:
        """Follow-up questions for the strategy's critical areas, capped."""
        context = session.context
        strategy = session.strategy
        cap = context.config.deep_dive_question_cap

        areas = attempt_sync(
            lambda: strategy.identify_critical_areas(context), stage="critical areas"
        ).unwrap_or(list(FALLBACK_CRITICAL_AREAS))
        if not areas:
            areas = list(FALLBACK_CRITICAL_AREAS)

        follow_ups: list[ResearchQuestion] = []
        for area in areas:
            if len(follow_ups) >= cap:
                break
            self._checkpoint(session)
            session.progress.update_activity(f"Planning deep dive: {area}")
            outcome = await attempt(
                strategy.generate_deep_questions(area, context), stage="deep questions"
            )
            follow_ups.extend(
                outcome.unwrap_or_else(lambda _: strategy.fallback_deep_questions(area, context))
            )
        logger.info("Planned %d follow-up questions across %d areas", len(follow_ups[:cap]), len(areas))
        return follow_ups[:cap]

    async def _research_batches(
        self,
        session: ResearchSession,
        questions: list[ResearchQuestion],
        *,
        deep: bool,
    ) -> None:
        """Research questions in priority-ordered batches, one batch at a time.

        A batch that outlives ``batch_timeout`` keeps its finished questions;
        the rest are recorded as errors. Cancellation observed inside a batch
        is re-raised once the batch has settled.
        """
        context = session.context
        progress = session.progress
        batch_size = self.settings.session.batch_size
        ordered = sorted(questions, key=lambda q: q.priority.rank, reverse=True)
        total = len(ordered)
        stop = self._stop_check(session)

        for start in range(0, total, batch_size):
            self._checkpoint(session)
            batch = ordered[start:start + batch_size]
            limiter = ConcurrencyLimiter(len(batch), name=f"{progress.phase.value} batch")
            outcome = await limiter.gather(
                [self._research_question(session, q, deep=deep, should_stop=stop) for q in batch],
                return_exceptions=True,
                deadline=self.settings.session.batch_timeout,
            )

            cancelled: Optional[SessionCancelled] = None
            for index, error in outcome.failed_results():
                if isinstance(error, SessionCancelled):
                    cancelled = error
                    continue
                progress.record_error(f"Research failed for '{batch[index].text}': {error}")

            done = min(total, start + batch_size)
            progress.set_question_counts(len(context.questions), context.researched_count)
            progress.update_fraction(done, total, f"Researched {done} of {total} questions")
            if cancelled is not None:
                raise cancelled

    def _stop_check(self, session: ResearchSession, *, enforce_deadline: bool = True) -> StopCheck:
        def check() -> None:
            self._checkpoint(session, enforce_deadline=enforce_deadline)

        return check

    async def _research_question(
        self,
        session: ResearchSession,
        question: ResearchQuestion,
        *,
        deep: bool,
        should_stop: StopCheck,
    ) -> int:
        """Gather evidence and an insight for one question.

        Returns:
            Number of citations kept for the question
        """
        context = session.context
        strategy = session.strategy
        config = context.config

        evidence = await self.supervisor.research(
            question,
            context,
            deep=deep,
            should_stop=should_stop,
            breaker=session.breaker,
        )
        enhanced = attempt_sync(
            lambda: strategy.enhance_citations(evidence, question, context),
            stage="citation enhancement",
        ).unwrap_or(evidence)
        enhanced = apply_domain_preferences(enhanced, config.preferred_domains)[: config.max_sources]
        context.add_citations(question.id, enhanced)

        should_stop()
        previous = context.insight_for(question.id)
        insight = await strategy.generate_insights(question, enhanced, context)
        if previous and previous != insight:
            merged = await self.synthesizer.synthesize_insights({question.text: [previous, insight]})
            insight = merged.get(question.text, insight)
        context.set_insight(question.id, insight)
        context.mark_researched(question.id)
        self._update_knowledge(question, insight, enhanced)
        logger.debug("Researched %r with %d citations", question.text[:60], len(enhanced))
        return len(enhanced)

    async def _retry(self, session: ResearchSession, question: ResearchQuestion) -> None:
        deep = "area" in question.metadata
        try:
            outcome = await attempt(
                self._research_question(
                    session,
                    question,
                    deep=deep,
                    should_stop=self._stop_check(session, enforce_deadline=False),
                ),
                stage="question retry",
            )
        except SessionCancelled:
            logger.info("Retry of %s stopped by cancellation", question.id)
            return
        if not outcome.ok:
            session.progress.record_error(outcome.describe_error())
            return

        context = session.context
        session.progress.set_question_counts(len(context.questions), context.researched_count)
        if session.result is not None:
            session.result = session.result.model_copy(
                update={
                    "questions": [q.model_copy() for q in context.questions],
                    "citations": context.citations_snapshot(),
                    "insights": context.insights_snapshot(),
                    "metrics": self._metrics(session),
                }
            )

    def _update_knowledge(
        self, question: ResearchQuestion, insight: str, evidence: list[CitationResult]
    ) -> None:
        try:
            self.knowledge.update_knowledge(question, insight, evidence)
        except Exception as exc:
            logger.warning("Knowledge update failed for %r: %s", question.text[:60], exc)

    # =========================================================================
    # Result assembly
    # =========================================================================

    def _metrics(self, session: ResearchSession) -> ResearchMetrics:
        context = session.context
        questions = context.questions
        citations = context.all_citations()
        researched = context.researched_count
        return ResearchMetrics(
            total_questions=len(questions),
            researched_questions=researched,
            total_citations=len(citations),
            unique_domains=len({c.domain for c in citations if c.domain}),
            average_relevance=(
                sum(c.relevance_score for c in citations) / len(citations) if citations else 0.0
            ),
            question_coverage=researched / len(questions) if questions else 0.0,
            processing_seconds=context.elapsed_seconds,
        )

    def _finish(
        self,
        session: ResearchSession,
        outputs: dict[str, str],
        stop_reason: Optional[str],
    ) -> ResearchResult:
        """Fill missing outputs from fallbacks, publish the Result, move to DONE."""
        context = session.context
        strategy = session.strategy
        stopped = stop_reason is not None

        synthesis = outputs.get("synthesis") or strategy.fallback_synthesis(context)
        report = outputs.get("report") or strategy.fallback_report(context, synthesis)

        result = ResearchResult(
            session_id=session.session_id,
            query=context.original_query,
            report=report,
            synthesis=synthesis,
            questions=[q.model_copy() for q in context.questions],
            citations=context.citations_snapshot(),
            insights=context.insights_snapshot(),
            relationships=context.relationships_snapshot(),
            inconsistencies=context.inconsistencies,
            strategy_name=strategy.display_name,
            errors=session.progress.errors,
            cancelled=stopped,
            started_at=context.start_time,
            completed_at=datetime.now(timezone.utc),
            metrics=self._metrics(session),
        )

        try:
            self.knowledge.store_result(session.session_id, result)
        except Exception as exc:
            logger.warning("Failed to store result for %s: %s", session.session_id, exc)

        session.result = result
        session.progress.set_question_counts(len(context.questions), context.researched_count)
        session.progress.finish(cancelled=stopped)
        if stop_reason == "deadline":
            session.task.mark_timeout(result)
        else:
            session.task.mark_completed(result=result)
        self._schedule_expiry(session)

        logger.info(
            "Research session %s finished (%s) in %.1fs with %d citations",
            session.session_id,
            session.task.status.value,
            result.metrics.processing_seconds,
            result.metrics.total_citations,
        )
        return result

    def _schedule_expiry(self, session: ResearchSession) -> None:
        retention = (
            self.settings.session.cancel_grace_seconds
            if session.task.is_cancelled
            else self.settings.session.retention_seconds
        )
        session.expires_at = time.monotonic() + retention
