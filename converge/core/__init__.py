"""Engine core — config, models, engine, persistence, reliability."""
