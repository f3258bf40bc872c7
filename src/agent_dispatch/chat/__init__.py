"""Chat delivery backends and automated-reply suppression."""
