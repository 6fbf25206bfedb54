"""Process-wide StatsD metrics facade."""
