"""ClipStream video processing pipeline."""
