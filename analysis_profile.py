"""
Analysis Profile Module - Saved analysis settings, drivetrain efficiency table, JSON save/load.
"""

import json
from dataclasses import dataclass, field, asdict, fields, replace
from typing import Optional

from physics import TrialParameters, SimulationConfig
from optimizer import ParameterBounds, EstimatorConfig


PROFILE_VERSION = 1

# Measured chain losses at 250 W, as drivetrain efficiency
CHAIN_EFFICIENCY = {
    "Shimano 11 (3.2W)": 0.9872,
    "KMC 12 (3.3W)": 0.9868,
    "SRAM Force 12 (4.9W)": 0.9804,
    "Shimano 12S (5.1W)": 0.9796,
    "KMC 11 (3.7W)": 0.9852,
    "Custom (Waxed)": 0.985,
}
DEFAULT_CHAIN = "Custom (Waxed)"


def efficiency_for_chain(chain: str) -> float:
    """
    Drivetrain efficiency for a named chain.

    Raises:
        ValueError: For a chain not in the table
    """
    if chain not in CHAIN_EFFICIENCY:
        raise ValueError(f"Unknown chain: {chain}. Options: {', '.join(CHAIN_EFFICIENCY)}")
    return CHAIN_EFFICIENCY[chain]


@dataclass
class DisplaySettings:
    """Display-only smoothing of elevation curves."""
    smoothing_enabled: bool = False
    smoothing_intensity: float = 5.0


@dataclass
class AnalysisProfile:
    """Everything needed to re-run an analysis, owned by the caller."""
    name: str = "Default"
    params: TrialParameters = field(default_factory=TrialParameters)
    bounds: ParameterBounds = field(default_factory=ParameterBounds)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    max_iterations: int = 200
    fast_mode: bool = False
    strict_bounds: bool = False
    chain: Optional[str] = None
    display: DisplaySettings = field(default_factory=DisplaySettings)

    def trial_parameters(self) -> TrialParameters:
        """Trial parameters with the chain table applied, when a chain is set."""
        if self.chain is None:
            return self.params
        return replace(self.params, efficiency=efficiency_for_chain(self.chain))

    def estimator_config(self, log_callback=None, verbose: bool = False) -> EstimatorConfig:
        return EstimatorConfig(
            max_iterations=self.max_iterations,
            fast_mode=self.fast_mode,
            strict_bounds=self.strict_bounds,
            verbose=verbose,
            log_callback=log_callback
        )

    def to_dict(self) -> dict:
        return {
            "version": PROFILE_VERSION,
            "name": self.name,
            "params": asdict(self.params),
            "bounds": asdict(self.bounds),
            "simulation": asdict(self.simulation),
            "estimator": {
                "max_iterations": self.max_iterations,
                "fast_mode": self.fast_mode,
                "strict_bounds": self.strict_bounds,
            },
            "chain": self.chain,
            "display": asdict(self.display),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'AnalysisProfile':
        """
        Build a profile from a dictionary, ignoring unknown keys.

        Missing sections take their defaults.

        Raises:
            ValueError: On an unsupported version or invalid values
        """
        version = data.get("version", PROFILE_VERSION)
        if version != PROFILE_VERSION:
            raise ValueError(f"Unsupported profile version: {version}")

        estimator = data.get("estimator", {})
        chain = data.get("chain")
        if chain is not None:
            efficiency_for_chain(chain)

        profile = cls(
            name=data.get("name", "Default"),
            params=_from_section(TrialParameters, data.get("params", {})),
            bounds=_from_section(ParameterBounds, data.get("bounds", {})),
            simulation=_from_section(SimulationConfig, data.get("simulation", {})),
            max_iterations=int(estimator.get("max_iterations", 200)),
            fast_mode=bool(estimator.get("fast_mode", False)),
            strict_bounds=bool(estimator.get("strict_bounds", False)),
            chain=chain,
            display=_from_section(DisplaySettings, data.get("display", {})),
        )
        profile.params.validate()
        return profile


def _from_section(cls, section: dict):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in section.items() if k in known})


def profile_to_json(profile: AnalysisProfile) -> str:
    """Convert profile to JSON string."""
    return json.dumps(profile.to_dict(), indent=2)


def profile_from_json(text: str) -> AnalysisProfile:
    """
    Parse a profile from JSON text.

    Raises:
        ValueError: On invalid JSON or invalid profile content
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid profile JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Profile JSON must be an object")
    return AnalysisProfile.from_dict(data)


def save_profile(profile: AnalysisProfile, filepath: str) -> None:
    with open(filepath, 'w') as f:
        f.write(profile_to_json(profile))


def load_profile(filepath: str) -> AnalysisProfile:
    """Load a profile from a JSON file."""
    with open(filepath, 'r') as f:
        return profile_from_json(f.read())
