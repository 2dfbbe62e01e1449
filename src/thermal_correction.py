"""
Temperature correction of conductor resistance.
Cable temperature is estimated from the ambient of the pose and season plus
a load heating term, then R(T) = R20 * (1 + alpha * (T - 20)).
"""
from typing import Optional

REFERENCE_TEMPERATURE = 20.0
MAX_LOAD_RATIO = 2.0

# Ambient temperature (degC) per pose and season
AMBIENT = {
    "AERIAL": {"WINTER": 5.0, "SUMMER": 28.0},
    "UNDERGROUND": {"WINTER": 12.0, "SUMMER": 20.0},
}

# Temperature rise at rated current (degC)
HEATING_CONSTANT = {"AERIAL": 40.0, "UNDERGROUND": 35.0}

# Temperature coefficient of resistance (1/degC)
ALPHA = {"CU": 0.00393, "AL": 0.00403}

MATERIAL_ALIASES = {
    "CU": "CU", "CUIVRE": "CU", "COPPER": "CU",
    "AL": "AL", "ALU": "AL", "ALUMINIUM": "AL", "ALUMINUM": "AL",
}


def normalize_material(material) -> Optional[str]:
    if not isinstance(material, str):
        return None
    return MATERIAL_ALIASES.get(material.strip().upper())


def ambient_temperature(season: str, pose: str) -> float:
    by_season = AMBIENT.get(str(pose).upper())
    if by_season is None:
        return REFERENCE_TEMPERATURE
    return by_season.get(str(season).upper(), REFERENCE_TEMPERATURE)


def cable_temperature(season: str, pose: str, current: float = 0.0, rated_current: float = 0.0) -> float:
    temperature = ambient_temperature(season, pose)
    if rated_current is None or rated_current <= 0 or not current:
        return temperature
    k = HEATING_CONSTANT.get(str(pose).upper(), 0.0)
    ratio = min(abs(current) / rated_current, MAX_LOAD_RATIO)
    return temperature + k * ratio ** 2


def correct_resistance(r20: float, temperature: float, material) -> float:
    alpha = ALPHA.get(normalize_material(material))
    if alpha is None:
        return r20
    return r20 * (1 + alpha * (temperature - REFERENCE_TEMPERATURE))


def correction_factor(season: str, pose: str, material, current: float = 0.0, rated_current: float = 0.0) -> float:
    """
    Multiplicative factor applied to the 20 degC resistance.
    Unknown materials are left uncorrected (factor 1).
    """
    temperature = cable_temperature(season, pose, current, rated_current)
    return correct_resistance(1.0, temperature, material)
