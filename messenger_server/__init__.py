"""Public key directory and ciphertext message store."""
