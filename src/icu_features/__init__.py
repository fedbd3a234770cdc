"""
ICU Stay Feature Extraction for MIMIC-III

This package derives per-ICU-stay clinical features (first or closest vital signs,
laboratory values, anthropometrics, demographics and readmission flags) from the
MIMIC-III tables icustays, admissions, patients, chartevents and labevents.

Every "first measurement" table is produced by one parameterised engine instead
of a hand-written query per measurement:

- Candidate gathering: pull chart/lab events for a set of item IDs and normalise units
- Validity filtering: plausibility bounds and a per-stay time window
- Selection: earliest or closest-to-reference measurement with deterministic tie-breaks

Main workflow:
1. Estimate clinical monitoring windows from heart rate events (optional)
2. Look up the feature configuration in the registry
3. Query candidate events and run the extractor for each feature
4. Materialise one table per feature, keyed by icustay_id
"""
