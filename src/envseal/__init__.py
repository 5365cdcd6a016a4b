"""
envseal - encrypted secrets files that are safe to commit.

Every value is sealed with a single data encryption key (DEK), and the DEK
is wrapped once per authorized public key listed in the project roster.

Features:
- set/get/unset: Manage sealed values in secrets.enc.yaml
- users: Maintain the roster of authorized public keys (envseal.yaml)
- rekey: Re-wrap the DEK for the roster, or rotate it (--rotate) to revoke
- exec: Run commands with secrets injected as environment variables
"""

__version__ = "0.1.0"
