"""Face check-in decision engine and its Django-backed collaborators."""
