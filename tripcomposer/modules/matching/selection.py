"""Star/bench agent selection for a single matching attempt."""

from __future__ import annotations

import datetime as dt
import time
from typing import Iterable, Optional
from uuid import uuid4

from tripcomposer.clock import utcnow
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.matching.models import (
    AgentMatch,
    AgentTier,
    MatchingAgent,
    MatchingConfig,
    MatchingResult,
    MatchingStatus,
    ScoredAgent,
    TravelRequestInput,
)
from tripcomposer.modules.matching.peak_season import PeakSeasonInfo, detect_peak_season
from tripcomposer.modules.matching.scoring import AgentScorer

logger = get_logger(__name__)


class AgentSelector:
    """Picks 2-3 agents per request, star tier first with bench fallback."""

    def __init__(self, config: Optional[MatchingConfig] = None, scorer: Optional[AgentScorer] = None) -> None:
        self._config = config or MatchingConfig.from_settings()
        self._scorer = scorer or AgentScorer(self._config)

    @property
    def config(self) -> MatchingConfig:
        return self._config

    def select(
        self,
        request: TravelRequestInput,
        agents: list[MatchingAgent],
        attempt: int = 1,
        excluded_agent_ids: Iterable[str] = (),
        off_hours_agent_ids: Iterable[str] = (),
        now: Optional[dt.datetime] = None,
    ) -> MatchingResult:
        """Run one selection attempt.

        Agents in ``off_hours_agent_ids`` stay eligible but are ordered after
        in-hours agents of the same tier.
        """
        started = time.perf_counter()
        now = now or utcnow()
        peak = detect_peak_season(
            request.start_date,
            request.end_date,
            request.destinations,
            self._config.min_agents,
            self._config.response_timeout_hours,
            self._config.peak_season,
            now=now,
        )

        excluded = set(excluded_agent_ids)
        eligible = [a for a in agents if a.agent_id not in excluded]
        logger.info(
            "selection_started",
            request_id=request.request_id,
            eligible=len(eligible),
            excluded=len(excluded),
            is_peak_season=peak.is_peak_season,
            attempt=attempt,
        )

        scored = self._scorer.score_agents(eligible, request)
        selected = self._pick(scored, request, peak, set(off_hours_agent_ids))

        def _result(status: MatchingStatus, matches: list[AgentMatch]) -> MatchingResult:
            return MatchingResult(
                request_id=request.request_id,
                status=status,
                matches=matches,
                star_agents_count=sum(1 for m in matches if m.tier == AgentTier.STAR),
                bench_agents_count=sum(1 for m in matches if m.tier == AgentTier.BENCH),
                total_candidates_evaluated=len(eligible),
                matching_duration_ms=round((time.perf_counter() - started) * 1000, 3),
                is_peak_season=peak.is_peak_season,
                attempt=attempt,
                completed_at=utcnow(),
            )

        if len(selected) < peak.adjusted_min_agents:
            if attempt < self._config.max_attempts:
                return _result(MatchingStatus.NO_AGENTS_AVAILABLE, [])
            if not selected:
                return _result(MatchingStatus.MATCHING_FAILED, [])

        matches = self._create_matches(selected, request, peak.adjusted_timeout_hours, now)
        result = _result(MatchingStatus.AGENTS_MATCHED, matches)
        logger.info(
            "selection_completed",
            request_id=request.request_id,
            matches=len(matches),
            star=result.star_agents_count,
            bench=result.bench_agents_count,
            duration_ms=result.matching_duration_ms,
        )
        return result

    def _pick(
        self,
        scored: list[ScoredAgent],
        request: TravelRequestInput,
        peak: PeakSeasonInfo,
        off_hours: set[str],
    ) -> list[ScoredAgent]:
        max_agents = self._config.max_agents

        def _ordered(tier: AgentTier) -> list[ScoredAgent]:
            # score order is already descending; sort is stable
            tiered = [s for s in scored if s.agent.tier == tier]
            return sorted(tiered, key=lambda s: s.agent.agent_id in off_hours)

        selected = _ordered(AgentTier.STAR)[:max_agents]
        star_found = len(selected)

        if len(selected) < peak.adjusted_min_agents and self._config.enable_bench_fallback:
            bench = _ordered(AgentTier.BENCH)[: max_agents - len(selected)]
            selected.extend(bench)
            if bench:
                logger.info(
                    "bench_fallback_used",
                    request_id=request.request_id,
                    star_found=star_found,
                    bench_added=len(bench),
                )

        if peak.is_peak_season and len(selected) < self._config.min_agents:
            logger.info(
                "peak_season_reduced_minimum",
                request_id=request.request_id,
                available=len(scored),
                adjusted_min_agents=peak.adjusted_min_agents,
            )
        return selected

    @staticmethod
    def _create_matches(
        selected: list[ScoredAgent],
        request: TravelRequestInput,
        timeout_hours: int,
        now: dt.datetime,
    ) -> list[AgentMatch]:
        expires_at = now + dt.timedelta(hours=timeout_hours)
        return [
            AgentMatch(
                match_id=str(uuid4()),
                agent_id=s.agent.agent_id,
                request_id=request.request_id,
                tier=s.agent.tier,
                match_score=s.total_score,
                match_reasons=s.reasons,
                matched_at=now,
                expires_at=expires_at,
            )
            for s in selected
        ]
