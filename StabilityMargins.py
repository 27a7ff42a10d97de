"""Module for gain/phase margin search and stability classification."""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from TransferFunction import (
    FrequencySweep,
    PhaseUnwrapper,
    TransferFunction,
    sweep_block,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarginSearchConfig:
    """
    Dense frequency grid used to locate crossovers.

    Crossovers are searched sample by sample, without root-finding or
    interpolation, so the grid must be fine enough for a sample to fall within
    the tolerance of each crossover.

    Attributes:
        freq_start: First frequency of the grid (rad/s) [default: 10 mrad/s]
        freq_end: Last frequency of the grid (rad/s) [default: 10 Mrad/s]
        num_points: Number of logarithmically spaced samples [default: 1e6]
        tolerance: Distance to -180° (degrees) or to 0 dB (dB) that counts
            as a crossover [default: 1e-3]
        chunk_size: Samples evaluated per block before checking for a
            crossover [default: 50000]
    """
    freq_start: float = 1e-2
    freq_end: float = 1e7
    num_points: int = 1_000_000
    tolerance: float = 1e-3
    chunk_size: int = 50_000

    def __post_init__(self) -> None:
        if not (0 < self.freq_start < self.freq_end) or not np.isfinite(self.freq_end):
            raise ValueError(
                f"Invalid search range {self.freq_start}..{self.freq_end} rad/s"
            )
        if self.num_points < 2:
            raise ValueError("num_points must be at least 2")
        if self.tolerance <= 0:
            raise ValueError("tolerance must be positive")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")


DEFAULT_MARGIN_SEARCH = MarginSearchConfig()


class StabilityVerdict(Enum):
    """Stability classification derived from the margins."""
    STABLE = 'stable'
    MARGINALLY_STABLE = 'marginally stable'
    POSSIBLY_UNSTABLE = 'possibly unstable'
    UNSTABLE = 'unstable'


@dataclass(frozen=True)
class StabilityMargins:
    """
    Stability margins of a transfer function.

    Attributes:
        phase_margin_deg: Phase margin (degrees), inf without gain crossover
        gain_margin_db: Gain margin (dB), inf without phase crossover
        verdict: Stability classification
        gain_crossover_freq: Frequency where |H| = 0 dB (rad/s), or None
        phase_crossover_freq: Frequency where the phase is -180° (rad/s), or None
    """
    phase_margin_deg: float
    gain_margin_db: float
    verdict: StabilityVerdict
    gain_crossover_freq: Optional[float] = None
    phase_crossover_freq: Optional[float] = None


@dataclass(frozen=True)
class BodeAnalysis:
    """Result of one analysis request: plotting sweep and margins."""
    sweep: FrequencySweep
    margins: StabilityMargins


class MarginAnalyzer:
    """
    Locates the gain and phase crossovers of a transfer function.

    Each search walks its own dense logarithmic grid with a fresh phase
    unwrapper and stops at the first crossover; later crossovers are ignored.

    Attributes:
        transfer_function: Analyzed transfer function
        config: Search grid and tolerance
    """

    def __init__(self, transfer_function: TransferFunction,
                 config: Optional[MarginSearchConfig] = None) -> None:
        self.transfer_function = transfer_function
        self.config = config if config is not None else DEFAULT_MARGIN_SEARCH

    def _first_crossover(
        self,
        at_crossover: Callable[[NDArray, NDArray], NDArray]
    ) -> Optional[Tuple[float, float, float]]:
        """
        Scans the search grid for the first sample satisfying a condition.

        Args:
            at_crossover: Function (magnitude_db, phase_deg) -> boolean mask

        Returns:
            Tuple (omega, magnitude_db, phase_deg) of the first matching
            sample, or None if no sample matches
        """
        cfg = self.config
        unwrapper = PhaseUnwrapper()

        for first in range(0, cfg.num_points, cfg.chunk_size):
            stop = min(first + cfg.chunk_size, cfg.num_points)
            omega = sweep_block(cfg.freq_start, cfg.freq_end, cfg.num_points, first, stop)
            magnitude_db, phase_deg = self.transfer_function.response(omega, unwrapper)

            hits = np.flatnonzero(at_crossover(magnitude_db, phase_deg))
            if len(hits):
                i = hits[0]
                return float(omega[i]), float(magnitude_db[i]), float(phase_deg[i])

        return None

    def gain_margin(self) -> Tuple[float, Optional[float]]:
        """
        Calculates the gain margin at the first phase crossover.

        Returns:
            Tuple (gain_margin_db, phase_crossover_freq):
                - gain_margin_db: -|H| (dB) where the phase reaches -180°,
                  inf if it never does
                - phase_crossover_freq: Crossover frequency (rad/s) or None
        """
        tolerance = self.config.tolerance
        crossover = self._first_crossover(
            lambda mag, phase: np.abs(phase + 180) < tolerance
        )
        if crossover is None:
            logger.debug("No phase crossover found for %r", self.transfer_function)
            return np.inf, None

        omega, magnitude_db, _ = crossover
        logger.debug("Phase crossover at %g rad/s (%.4f dB)", omega, magnitude_db)
        return -magnitude_db, omega

    def phase_margin(self) -> Tuple[float, Optional[float]]:
        """
        Calculates the phase margin at the first gain crossover.

        Returns:
            Tuple (phase_margin_deg, gain_crossover_freq):
                - phase_margin_deg: 180° + phase where |H| reaches 0 dB,
                  inf if it never does
                - gain_crossover_freq: Crossover frequency (rad/s) or None
        """
        tolerance = self.config.tolerance
        crossover = self._first_crossover(
            lambda mag, phase: np.abs(mag) < tolerance
        )
        if crossover is None:
            logger.debug("No gain crossover found for %r", self.transfer_function)
            return np.inf, None

        omega, _, phase_deg = crossover
        logger.debug("Gain crossover at %g rad/s (%.4f°)", omega, phase_deg)
        return 180 + phase_deg, omega

    def margins(self, magnitude_db: Union[List[float], NDArray]) -> StabilityMargins:
        """
        Calculates both margins and classifies the stability.

        Args:
            magnitude_db: Magnitude trace (dB) of the plotting sweep, used when
                the phase margin is infinite

        Returns:
            StabilityMargins
        """
        phase_margin, gain_crossover = self.phase_margin()
        gain_margin, phase_crossover = self.gain_margin()
        verdict = classify_stability(phase_margin, gain_margin, magnitude_db)

        return StabilityMargins(
            phase_margin_deg=phase_margin,
            gain_margin_db=gain_margin,
            verdict=verdict,
            gain_crossover_freq=gain_crossover,
            phase_crossover_freq=phase_crossover,
        )


def classify_stability(phase_margin: float, gain_margin: float,
                       magnitude_db: Union[List[float], NDArray]) -> StabilityVerdict:
    """
    Classifies stability from the margins.

    Rules are checked in order and the first match wins. With an infinite
    phase margin and a magnitude trace of mixed sign, the remaining rules
    decide.

    Args:
        phase_margin: Phase margin (degrees), possibly inf
        gain_margin: Gain margin (dB), possibly inf
        magnitude_db: Magnitude trace (dB) of the plotting sweep

    Returns:
        StabilityVerdict
    """
    magnitude_db = np.asarray(magnitude_db, dtype=float)
    pm_infinite = phase_margin == np.inf
    gm_infinite = gain_margin == np.inf

    if phase_margin > 0 and gain_margin > 0:
        return StabilityVerdict.STABLE

    if pm_infinite and gain_margin > 0:
        if np.all(magnitude_db < 0):
            return StabilityVerdict.STABLE
        if np.all(magnitude_db > 0):
            return StabilityVerdict.POSSIBLY_UNSTABLE

    if gm_infinite and phase_margin > 0:
        return StabilityVerdict.STABLE
    if gm_infinite and pm_infinite:
        return StabilityVerdict.STABLE
    if phase_margin == 0 or gain_margin == 0:
        return StabilityVerdict.MARGINALLY_STABLE

    return StabilityVerdict.UNSTABLE


def analyze(
    transfer_function: TransferFunction,
    freq_start: float,
    freq_end: float,
    num_points: int = TransferFunction.BODE_POINTS,
    config: Optional[MarginSearchConfig] = None
) -> BodeAnalysis:
    """
    Runs a complete analysis: Bode sweep, margin searches and classification.

    The margins come from the dense search grid of config, independent of the
    plotting sweep; only the classification looks at the plotting sweep.

    Args:
        transfer_function: Transfer function to analyze
        freq_start: First frequency of the plotting sweep (rad/s)
        freq_end: Last frequency of the plotting sweep (rad/s)
        num_points: Number of points of the plotting sweep [default: 500]
        config: Margin search grid [default: DEFAULT_MARGIN_SEARCH]

    Returns:
        BodeAnalysis

    Example:
        >>> result = analyze(TransferFunction([1], [1, 0]), 0.01, 100)
        >>> result.margins.verdict
        <StabilityVerdict.STABLE: 'stable'>
    """
    sweep = transfer_function.bode(freq_start, freq_end, num_points)
    margins = MarginAnalyzer(transfer_function, config).margins(sweep.magnitude_db)

    logger.info(
        "%r: phase margin %s°, gain margin %s dB, %s",
        transfer_function, margins.phase_margin_deg, margins.gain_margin_db,
        margins.verdict.value
    )
    return BodeAnalysis(sweep, margins)
