"""Module for rational transfer function evaluation and Bode sweep data."""
import logging
from dataclasses import dataclass
from typing import Iterator, List, NamedTuple, Tuple, Union

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class FrequencyResponseSample(NamedTuple):
    """One point of a frequency sweep."""
    omega: float
    magnitude_db: float
    phase_deg: float


def frequency_sweep(freq_start: float, freq_end: float, num_points: int) -> NDArray:
    """
    Generates logarithmically spaced angular frequencies.

    Bounds are checked here rather than left to the caller, so an invalid
    request fails before any evaluation.

    Args:
        freq_start: First frequency (rad/s), strictly positive
        freq_end: Last frequency (rad/s), greater than freq_start
        num_points: Number of frequencies (at least 2)

    Returns:
        Strictly increasing array of num_points frequencies (rad/s)

    Raises:
        ValueError: If the bounds or the number of points are invalid

    Example:
        >>> frequency_sweep(0.1, 10, 3)
        array([ 0.1,  1. , 10. ])
    """
    if not (np.isfinite(freq_start) and np.isfinite(freq_end)):
        raise ValueError("Sweep bounds must be finite")
    if freq_start <= 0 or freq_end <= 0:
        raise ValueError("Sweep bounds must be strictly positive")
    if freq_start >= freq_end:
        raise ValueError(
            f"Sweep start ({freq_start}) must be lower than sweep end ({freq_end})"
        )
    if num_points < 2:
        raise ValueError("A sweep needs at least 2 points")

    return sweep_block(freq_start, freq_end, num_points, 0, num_points)


def sweep_block(freq_start: float, freq_end: float, num_points: int,
                first: int, stop: int) -> NDArray:
    """Returns samples first..stop-1 of a num_points logarithmic sweep, unvalidated."""
    log_start = np.log10(freq_start)
    log_end = np.log10(freq_end)
    indices = np.arange(first, stop, dtype=float)
    return np.power(10.0, log_start + (log_end - log_start) * indices / (num_points - 1))


class PhaseUnwrapper:
    """
    Running phase unwrapper for one sweep.

    Turns wrapped phases (range (-180°, 180°]) into a continuous trace by removing
    the ±360° jumps between consecutive samples. Each sweep owns a fresh instance;
    call reset() to reuse one for a new sweep.

    Attributes:
        last_unwrapped_phase: Unwrapped phase of the previous sample (degrees)
    """

    def __init__(self) -> None:
        self.last_unwrapped_phase = 0.0
        self._samples = 0

    def reset(self) -> None:
        """Forgets the previous samples."""
        self.last_unwrapped_phase = 0.0
        self._samples = 0

    @staticmethod
    def _correction(delta: Union[float, NDArray]) -> Union[float, NDArray]:
        """Multiple of 360° to add so that a phase step lies within ±180°."""
        return np.where(
            delta > 180, -360 * np.ceil((delta - 180) / 360),
            np.where(delta < -180, 360 * np.ceil((np.abs(delta) - 180) / 360), 0.0)
        )

    def unwrap(self, phase: float) -> float:
        """
        Unwraps a single phase sample.

        Args:
            phase: Wrapped phase (degrees)

        Returns:
            Unwrapped phase (degrees)
        """
        unwrapped = phase
        if self._samples > 0:
            delta = phase - self.last_unwrapped_phase
            if delta > 180:
                unwrapped = phase - 360 * np.ceil((delta - 180) / 360)
            elif delta < -180:
                unwrapped = phase + 360 * np.ceil((abs(delta) - 180) / 360)

        self.last_unwrapped_phase = float(unwrapped)
        self._samples += 1
        return self.last_unwrapped_phase

    def unwrap_array(self, phases: Union[List[float], NDArray]) -> NDArray:
        """
        Unwraps a block of consecutive phase samples.

        Gives the same result as calling unwrap() on every sample in order, and
        continues from (and updates) the running state. A NaN sample stays NaN and
        the sample after it is kept as-is.

        Args:
            phases: Wrapped phases (degrees)

        Returns:
            Unwrapped phases (degrees)
        """
        phases = np.asarray(phases, dtype=float)
        unwrapped = np.empty_like(phases)

        # Unwrap each run of finite samples between NaN samples
        start = 0
        for stop in [*np.flatnonzero(np.isnan(phases)), len(phases)]:
            if stop > start:
                unwrapped[start:stop] = self._unwrap_run(phases[start:stop])
            if stop < len(phases):
                unwrapped[stop] = np.nan
                self.last_unwrapped_phase = np.nan
                self._samples += 1
            start = stop + 1

        return unwrapped

    def _unwrap_run(self, phases: NDArray) -> NDArray:
        """Unwraps NaN-free samples against the running state."""
        if self._samples > 0 and not np.isnan(self.last_unwrapped_phase):
            previous = self.last_unwrapped_phase
        else:
            previous = phases[0]

        # The step from the previous unwrapped sample, then raw steps
        delta = np.diff(np.concatenate(([previous], phases)))
        if np.any(np.mod(delta, 360) == 180):
            # Half-turn steps go either way depending on the running offset
            return np.array([self.unwrap(phase) for phase in phases])

        unwrapped = phases + np.cumsum(self._correction(delta))

        self.last_unwrapped_phase = float(unwrapped[-1])
        self._samples += len(phases)
        return unwrapped


@dataclass(frozen=True, eq=False)
class FrequencySweep:
    """
    Bode data for a logarithmic frequency sweep. The arrays are read-only copies.

    Attributes:
        frequencies: Angular frequencies (rad/s), increasing
        magnitude_db: Magnitude |H(jω)| in decibels
        phase_deg: Unwrapped phase of H(jω) in degrees
    """
    frequencies: NDArray
    magnitude_db: NDArray
    phase_deg: NDArray

    def __post_init__(self) -> None:
        for name in ('frequencies', 'magnitude_db', 'phase_deg'):
            values = np.array(getattr(self, name), dtype=float)
            values.setflags(write=False)
            object.__setattr__(self, name, values)

    def __len__(self) -> int:
        return len(self.frequencies)

    def __iter__(self) -> Iterator[FrequencyResponseSample]:
        for omega, mag, phase in zip(self.frequencies, self.magnitude_db, self.phase_deg):
            yield FrequencyResponseSample(float(omega), float(mag), float(phase))

    def __getitem__(self, index: int) -> FrequencyResponseSample:
        return FrequencyResponseSample(
            float(self.frequencies[index]),
            float(self.magnitude_db[index]),
            float(self.phase_deg[index]),
        )


class TransferFunction:
    """
    Rational transfer function H(s) = N(s) / D(s).

    Attributes:
        numerator: Numerator coefficients N(s) (descending order)
        denominator: Denominator coefficients D(s) (descending order)
    """

    # Default number of points of a Bode sweep
    BODE_POINTS = 500

    def __init__(
        self,
        numerator: Union[List[float], NDArray],
        denominator: Union[List[float], NDArray]
    ) -> None:
        """
        Initializes the transfer function from its polynomial coefficients.

        Args:
            numerator: Numerator coefficients N(s), highest degree first
            denominator: Denominator coefficients D(s), highest degree first

        Raises:
            ValueError: If a coefficient sequence is empty

        Example:
            >>> # H(s) = 1 / (s + 1)
            >>> tf = TransferFunction([1], [1, 1])
        """
        numerator = np.array(numerator, dtype=float)
        denominator = np.array(denominator, dtype=float)

        if numerator.ndim != 1 or len(numerator) == 0:
            raise ValueError("Numerator must be a non-empty sequence of coefficients")
        if denominator.ndim != 1 or len(denominator) == 0:
            raise ValueError("Denominator must be a non-empty sequence of coefficients")

        # Values are shared between analyses, keep them read-only
        numerator.setflags(write=False)
        denominator.setflags(write=False)
        self.numerator = numerator
        self.denominator = denominator

    @property
    def order(self) -> int:
        """Degree of the denominator polynomial."""
        return len(self.denominator) - 1

    @property
    def poles(self) -> NDArray:
        """Roots of the denominator."""
        return np.roots(self.denominator)

    @property
    def zeros(self) -> NDArray:
        """Roots of the numerator."""
        return np.roots(self.numerator)

    def evaluate(self, omega: Union[float, NDArray]) -> Union[complex, NDArray]:
        """
        Evaluates H(jω).

        A zero denominator does not raise: the division follows IEEE rules and
        yields an infinite or NaN complex value.

        Args:
            omega: Angular frequency or array of frequencies (rad/s)

        Returns:
            H(jω), a complex number for a scalar omega, a complex array otherwise
        """
        s = 1j * np.asarray(omega, dtype=float)

        with np.errstate(divide='ignore', invalid='ignore'):
            H = np.polyval(self.numerator, s) / np.polyval(self.denominator, s)

        if np.ndim(H) == 0:
            return complex(H)
        return H

    def response(self, omega: NDArray, unwrapper: PhaseUnwrapper) -> Tuple[NDArray, NDArray]:
        """
        Computes magnitude and unwrapped phase over a block of frequencies.

        Args:
            omega: Increasing angular frequencies (rad/s)
            unwrapper: Running unwrapper of the sweep the block belongs to

        Returns:
            Tuple (magnitude_db, phase_deg)
        """
        H = self.evaluate(omega)

        with np.errstate(divide='ignore', invalid='ignore'):
            magnitude_db = 20 * np.log10(np.abs(H))
        phase_deg = unwrapper.unwrap_array(np.angle(H, deg=True))

        return magnitude_db, phase_deg

    def bode(self, freq_start: float, freq_end: float,
             num_points: int = BODE_POINTS) -> FrequencySweep:
        """
        Calculates Bode diagram data over a logarithmic sweep.

        Args:
            freq_start: First frequency (rad/s)
            freq_end: Last frequency (rad/s)
            num_points: Number of frequencies [default: 500]

        Returns:
            FrequencySweep with frequencies, magnitude (dB) and unwrapped phase (°)
        """
        omega = frequency_sweep(freq_start, freq_end, num_points)
        magnitude_db, phase_deg = self.response(omega, PhaseUnwrapper())

        non_finite = np.count_nonzero(~np.isfinite(magnitude_db))
        if non_finite:
            logger.warning(
                "%d of %d sweep samples are not finite (pole or zero on the grid)",
                non_finite, num_points
            )
        logger.debug("Bode sweep %g..%g rad/s, %d points", freq_start, freq_end, num_points)

        return FrequencySweep(omega, magnitude_db, phase_deg)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TransferFunction):
            return NotImplemented
        return (np.array_equal(self.numerator, other.numerator)
                and np.array_equal(self.denominator, other.denominator))

    def __hash__(self) -> int:
        # Adding 0.0 maps -0.0 to 0.0, which __eq__ treats as equal
        return hash((tuple((self.numerator + 0.0).tolist()),
                     tuple((self.denominator + 0.0).tolist())))

    def __repr__(self) -> str:
        """String representation of the transfer function."""
        return (
            f"TransferFunction({self.numerator.tolist()}, "
            f"{self.denominator.tolist()})"
        )
