"""Activity and mood monitors that decide when to alert."""
