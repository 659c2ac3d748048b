"""chatguard: obfuscation-resistant chat moderation with progressive sanctions."""

__version__ = "0.1.0"
