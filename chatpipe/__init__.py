"""Message delivery and reconstruction pipeline for person-to-person chat."""
