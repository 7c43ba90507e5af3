"""Android app CPU and memory benchmark."""
