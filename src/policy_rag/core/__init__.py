"""Configuration, database access and errors shared by the pipeline."""
