"""Static and live checks for the git scanning infrastructure."""
