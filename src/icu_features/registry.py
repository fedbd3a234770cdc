"""
Feature Registry

Declarative configuration of every per-stay feature. Each entry is a
FeatureConfig for the generic extractor; adding a feature means adding an entry
here, not writing another query.

Feature groups:
1. Vital signs (chartevents, first value from 6 hours before ICU admission)
2. Anthropometrics (chartevents, unit-converted height and weight)
3. Laboratory values (labevents, first value from 6 hours before ICU admission)
4. Lipid panel (labevents, value closest to ICU admission within the prior week)
"""
from typing import Dict, List

from .config import ANTHROPOMETRIC_LOOKBACK, FIRST_MEASUREMENT_LOOKBACK, HEART_RATE_ITEMIDS, LIPID_LOOKBACK
from .errors import ConfigurationError
from .extractor import FeatureConfig, SelectionPolicy
from .normalization import UnitNormalizer, fahrenheit_to_celsius, identity, inches_to_centimeters
from .validity import ACCEPT_ANY, ValueRange, positive
from .windows import ZERO, Window

# Standard windows around the administrative ICU stay
FIRST_MEASUREMENT_WINDOW = Window("intime", FIRST_MEASUREMENT_LOOKBACK, "outtime", ZERO)
HEIGHT_WINDOW = Window("intime", ANTHROPOMETRIC_LOOKBACK, "outtime", ZERO)
WEIGHT_WINDOW = Window("intime", ANTHROPOMETRIC_LOOKBACK, "intime", ANTHROPOMETRIC_LOOKBACK)
LIPID_WINDOW = Window("intime", LIPID_LOOKBACK, "outtime", ZERO)

# MIMIC-III item IDs (CareVue and MetaVision)
SYSBP_ITEMIDS = [51, 442, 455, 6701, 220050, 220179]
DIASBP_ITEMIDS = [8368, 8440, 8441, 8555, 220051, 220180]
MEANBP_ITEMIDS = [52, 443, 456, 6702, 220052, 220181, 225312]
SPO2_ITEMIDS = [646, 220277]
RESPRATE_ITEMIDS = [615, 618, 220210, 224690]
GLUCOSE_ITEMIDS = [807, 811, 1529, 3744, 3745, 220621, 225664, 226537]
RHYTHM_ITEMIDS = [212, 3354, 5119, 220048]

TEMP_C_ITEMIDS = [676, 223762]
TEMP_F_ITEMIDS = [678, 223761]

HEIGHT_IN_ITEMIDS = [920, 1394, 4187, 3486, 226707]
HEIGHT_CM_ITEMIDS = [3485, 4188, 226730]

WEIGHT_ADMISSION_ITEMIDS = [762, 226512]    # Admission weight, always preferred
WEIGHT_DAILY_ITEMIDS = [763, 224639]        # Daily weight

# Lab item IDs and plausibility bounds: name -> (itemids, bound)
FIRST_LABS = {
    "albumin": ([50862], positive(10)),
    "alt": ([50861], positive(10000)),
    "ast": ([50878], positive(10000)),
    "bilirubin": ([50885], ValueRange(0, 150)),
    "bun": ([51006], positive(300)),
    "creatinine": ([50912], positive(150)),
    "hemoglobin": ([51222, 50811], positive(50)),
    "hematocrit": ([51221, 50810], positive(100)),
    "ntprobnp": ([50963], positive(70000)),
    "platelet": ([51265], positive(10000)),
    "potassium": ([50971, 50822], positive(30)),
    "wbc": ([51300, 51301], positive(1000)),
}

LIPID_LABS = {
    "hdl": ([50904], positive(150)),
    "ldl": ([50905, 50906], positive(400)),
    "triglycerides": ([51000], positive(2000)),
    "total_cholesterol": ([50907], positive(500)),
}


def _vital(name: str, itemids: List[int], validity, unit: str) -> FeatureConfig:
    return FeatureConfig(
        name=name,
        source_tags=tuple(itemids),
        unit_normalizer=UnitNormalizer.unconverted(itemids),
        validity=validity,
        window=FIRST_MEASUREMENT_WINDOW,
        tag_priority=tuple(itemids),
        unit=unit,
    )


def _lab(name: str, itemids: List[int], validity, window: Window, policy: SelectionPolicy) -> FeatureConfig:
    return FeatureConfig(
        name=name,
        source_tags=tuple(itemids),
        unit_normalizer=UnitNormalizer.unconverted(itemids),
        validity=validity,
        window=window,
        policy=policy,
        tag_priority=tuple(itemids),
        source_table="labevents",
        join_key="subject_id",
    )


def _build_registry() -> Dict[str, FeatureConfig]:
    features = [
        _vital("heartrate", HEART_RATE_ITEMIDS, ValueRange(0, 300, min_inclusive=False, max_inclusive=False), "bpm"),
        _vital("sysbp", SYSBP_ITEMIDS, ValueRange(0, 400, min_inclusive=False, max_inclusive=False), "mmHg"),
        _vital("diasbp", DIASBP_ITEMIDS, ValueRange(0, 300, min_inclusive=False, max_inclusive=False), "mmHg"),
        _vital("meanbp", MEANBP_ITEMIDS, ValueRange(0, 300, min_inclusive=False, max_inclusive=False), "mmHg"),
        _vital("spo2", SPO2_ITEMIDS, positive(100), "%"),
        _vital("resprate", RESPRATE_ITEMIDS, ValueRange(0, 70, min_inclusive=False, max_inclusive=False), "insp/min"),
        _vital("glucose", GLUCOSE_ITEMIDS, positive(), "mg/dL"),
        FeatureConfig(
            name="tempc",
            source_tags=tuple(TEMP_C_ITEMIDS + TEMP_F_ITEMIDS),
            unit_normalizer=UnitNormalizer.from_groups({
                identity: TEMP_C_ITEMIDS,
                fahrenheit_to_celsius: TEMP_F_ITEMIDS,
            }),
            # Readings are bounded in the unit they were charted in
            raw_validity={
                **{itemid: ValueRange(10, 50, min_inclusive=False, max_inclusive=False) for itemid in TEMP_C_ITEMIDS},
                **{itemid: ValueRange(70, 120, min_inclusive=False, max_inclusive=False) for itemid in TEMP_F_ITEMIDS},
            },
            window=FIRST_MEASUREMENT_WINDOW,
            tag_priority=tuple(TEMP_C_ITEMIDS + TEMP_F_ITEMIDS),
            unit="degC",
        ),
        FeatureConfig(
            name="rhythm",
            source_tags=tuple(RHYTHM_ITEMIDS),
            unit_normalizer=UnitNormalizer.unconverted(RHYTHM_ITEMIDS),
            validity=ACCEPT_ANY,
            window=FIRST_MEASUREMENT_WINDOW,
            tag_priority=tuple(RHYTHM_ITEMIDS),
            value_kind="categorical",
        ),
        FeatureConfig(
            name="height",
            source_tags=tuple(HEIGHT_IN_ITEMIDS + HEIGHT_CM_ITEMIDS),
            unit_normalizer=UnitNormalizer.from_groups({
                inches_to_centimeters: HEIGHT_IN_ITEMIDS,
                identity: HEIGHT_CM_ITEMIDS,
            }),
            validity=ValueRange(120, 230),
            window=HEIGHT_WINDOW,
            round_digits=1,
            unit="cm",
        ),
        FeatureConfig(
            name="weight",
            source_tags=tuple(WEIGHT_ADMISSION_ITEMIDS + WEIGHT_DAILY_ITEMIDS),
            unit_normalizer=UnitNormalizer.unconverted(WEIGHT_ADMISSION_ITEMIDS + WEIGHT_DAILY_ITEMIDS),
            validity=ValueRange(30, 300),
            window=WEIGHT_WINDOW,
            tag_priority=tuple(WEIGHT_ADMISSION_ITEMIDS + WEIGHT_DAILY_ITEMIDS),
            priority_first=True,
            round_digits=2,
            unit="kg",
        ),
    ]
    for name, (itemids, validity) in FIRST_LABS.items():
        features.append(_lab(name, itemids, validity, FIRST_MEASUREMENT_WINDOW, SelectionPolicy.EARLIEST))
    for name, (itemids, validity) in LIPID_LABS.items():
        features.append(_lab(name, itemids, validity, LIPID_WINDOW, SelectionPolicy.CLOSEST_TO_REFERENCE))
    return {feature.name: feature for feature in features}


FEATURE_REGISTRY: Dict[str, FeatureConfig] = _build_registry()


def get_feature_config(name: str) -> FeatureConfig:
    """Look up a registered feature, raising ConfigurationError for unknown names."""
    try:
        return FEATURE_REGISTRY[name]
    except KeyError:
        raise ConfigurationError(f"Unknown feature '{name}'; registered features: {sorted(FEATURE_REGISTRY)}") from None
