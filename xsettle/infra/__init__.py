"""Infrastructure: logging, signer nonce coordination, chain clients."""
