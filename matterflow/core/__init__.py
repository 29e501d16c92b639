"""Engine-wide primitives shared by models and services."""
