"""User accounts service: registration, e-mail OTP verification, and login."""
