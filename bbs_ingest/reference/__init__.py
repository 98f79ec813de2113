"""Static reference tables shipped with the package."""
