"""Speculative grammar masking of logits."""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import torch
from transformers.generation.logits_process import LogitsProcessor

from guidemask.config import ProcessorOptions
from guidemask.grammar import GrammarDescription
from guidemask.session import GrammarSession
from guidemask.utils.scoring import top_candidates

logger = logging.getLogger(__name__)


@dataclass
class MaskStats:
    """Counters describing which cost path each step took.

    Attributes:
        steps: Score arrays processed.
        fast_path: Steps resolved by probing candidates only.
        full_mask: Steps that materialized the full mask.
        probes: Single-token admissibility probes issued.
        process_time: Cumulative seconds spent masking.
    """
    steps: int = 0
    fast_path: int = 0
    full_mask: int = 0
    probes: int = 0
    process_time: float = 0.0


class SpeculativeMaskApplier:
    """Applies a grammar session's admissibility decisions to logits.

    Each step probes the top ``speculation_depth`` tokens. If any of them is
    admissible, the admissible candidates keep their scores and every other
    token is set to ``-inf``, without computing the full mask. Otherwise the
    full mask is materialized and applied.

    NaN scores are never admissible. With ``speculation_depth >= vocab_size``
    the output is identical to applying the full mask directly.

    Args:
        session: Grammar session for this generation stream.
        options: Processor options; keyword overrides take precedence.
        speculation_depth: Candidates probed before the full mask (>= 1).
        debug: Log the path taken on every step.
    """

    def __init__(
        self,
        session: GrammarSession,
        options: Optional[ProcessorOptions] = None,
        *,
        speculation_depth: Optional[int] = None,
        debug: Optional[bool] = None,
    ):
        if not isinstance(session, GrammarSession):
            raise TypeError(f"session must be a GrammarSession instance, got {type(session)}")

        options = options or ProcessorOptions()
        if speculation_depth is not None or debug is not None:
            options = ProcessorOptions(
                speculation_depth=options.speculation_depth if speculation_depth is None else speculation_depth,
                debug=options.debug if debug is None else debug,
            )

        session.claim(self)
        self.session = session
        self.debug = options.debug
        self.speculation_depth = min(options.speculation_depth, session.vocab_size)
        self.stats = MaskStats()

    def apply(self, scores: torch.Tensor) -> torch.Tensor:
        """Mask inadmissible tokens in one step's scores.

        Does not advance the session.

        Args:
            scores: Raw logits of shape (vocab_size,). Positions beyond the
                session's vocabulary are treated as inadmissible.

        Returns:
            New tensor of the same shape, dtype and device with inadmissible
            tokens set to ``-inf``.
        """
        if scores.dim() != 1:
            raise ValueError(f"scores must be one-dimensional, got shape {tuple(scores.shape)}")
        if scores.numel() == 0:
            return scores.clone()

        start_time = time.time()
        self.stats.steps += 1

        allowed = []
        for token_id, _ in top_candidates(scores, self.speculation_depth):
            self.stats.probes += 1
            if self.session.is_token_allowed(token_id):
                allowed.append(token_id)

        if allowed:
            # Admissible candidates keep their scores
            self.stats.fast_path += 1
            index = torch.tensor(allowed, dtype=torch.long, device=scores.device)
            result = torch.full_like(scores, float('-inf'))
            result[index] = scores[index]
            if self.debug:
                logger.debug("step %d: fast path, %d admissible candidate(s)", self.stats.steps, len(allowed))
        else:
            self.stats.full_mask += 1
            # NaN is never a candidate, so it is masked on this path too
            inadmissible = ~self._full_mask(scores) | torch.isnan(scores)
            result = scores.masked_fill(inadmissible, float('-inf'))
            if self.debug:
                logger.debug("step %d: no candidate admissible, applied full mask", self.stats.steps)

        self.stats.process_time += time.time() - start_time
        return result

    def _full_mask(self, scores: torch.Tensor) -> torch.Tensor:
        """Session mask resized to the score length and moved to its device."""
        mask = self.session.get_token_mask()
        n_scores = scores.shape[0]
        if mask.shape[0] > n_scores:
            mask = mask[:n_scores]
        elif mask.shape[0] < n_scores:
            padding = torch.zeros(n_scores - mask.shape[0], dtype=torch.bool)
            mask = torch.cat([mask, padding])
        return mask.to(scores.device, non_blocking=True)

    def on_token(self, token_id: int) -> None:
        """Report the sampled token; advances the session."""
        self.session.advance(int(token_id))

    def can_stop(self) -> bool:
        return self.session.is_complete()

    def reset(self, description: Optional[GrammarDescription] = None) -> None:
        """Reset the session (optionally to a new grammar) and the counters."""
        self.session.reset(description)
        self.stats = MaskStats()

    def close(self) -> None:
        """Release the session so another processor may use it."""
        self.session.release(self)


class GuidanceLogitsProcessor(LogitsProcessor):
    """transformers logits processor enforcing a grammar session.

    When ``prompt_length`` is given, tokens appended to ``input_ids`` since
    the previous call are reported to the session before masking, so the
    processor can be passed straight to ``model.generate``. Without it the
    caller reports tokens through :meth:`on_token`.

    Args:
        session: Grammar session for this generation stream.
        options: Processor options.
        prompt_length: Length of the prompt in tokens.
        speculation_depth: Overrides ``options.speculation_depth``.
        debug: Overrides ``options.debug``.
    """

    def __init__(
        self,
        session: GrammarSession,
        options: Optional[ProcessorOptions] = None,
        prompt_length: Optional[int] = None,
        *,
        speculation_depth: Optional[int] = None,
        debug: Optional[bool] = None,
    ):
        self.applier = SpeculativeMaskApplier(
            session,
            options,
            speculation_depth=speculation_depth,
            debug=debug,
        )
        self.prompt_length = prompt_length
        self.current_index = 0

    @property
    def session(self) -> GrammarSession:
        return self.applier.session

    @property
    def stats(self) -> MaskStats:
        return self.applier.stats

    def __call__(
        self,
        input_ids: torch.LongTensor,
        scores: torch.FloatTensor,
    ) -> torch.FloatTensor:
        """Apply grammar constraints to logits.

        Args:
            input_ids: Input token IDs of shape (batch_size, sequence_length).
            scores: Raw logits of shape (batch_size, vocab_size).

        Returns:
            Constrained logits with inadmissible tokens set to ``-inf``.
        """
        if self.prompt_length is not None:
            self._sync(input_ids)

        if scores.dim() == 1:
            return self.applier.apply(scores)
        return torch.stack([self.applier.apply(row) for row in scores])

    def _sync(self, input_ids: torch.LongTensor) -> None:
        """Advance the session with newly generated tokens."""
        assert input_ids.shape[0] == 1, "Batch size must be 1 when tracking generated tokens"
        generated = input_ids[0, self.prompt_length:].tolist()
        for token_id in generated[self.current_index:]:
            self.applier.on_token(token_id)
            self.current_index += 1

    def on_token(self, token_id: int) -> None:
        self.applier.on_token(token_id)

    def can_stop(self) -> bool:
        return self.applier.can_stop()

    def reset(self, description: Optional[GrammarDescription] = None) -> None:
        """Reset for a new generation."""
        self.applier.reset(description)
        self.current_index = 0
