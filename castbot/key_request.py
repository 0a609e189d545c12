"""
EIP-712 signatures for Farcaster signed key requests.

A new signer only becomes usable after the user approves a key request
signed by the app's own custody account (the developer mnemonic).
"""
from eth_account import Account

SIGNED_KEY_REQUEST_DOMAIN = {
    "name": "Farcaster SignedKeyRequestValidator",
    "version": "1",
    "chainId": 10,
    "verifyingContract": "0x00000000FC700472606ED4fA22623Acf62c60553",
}

SIGNED_KEY_REQUEST_TYPES = {
    "SignedKeyRequest": [
        {"name": "requestFid", "type": "uint256"},
        {"name": "key", "type": "bytes"},
        {"name": "deadline", "type": "uint256"},
    ],
}


class KeyRequestSigner:
    """Signs key requests with the account derived from a BIP-39 mnemonic."""

    def __init__(self, mnemonic: str):
        Account.enable_unaudited_hdwallet_features()
        self._account = Account.from_mnemonic(mnemonic)

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, request_fid: int, public_key: str, deadline: int) -> str:
        """Return the hex signature over ``(request_fid, public_key, deadline)``."""
        key = bytes.fromhex(public_key[2:] if public_key.startswith("0x") else public_key)
        signed = self._account.sign_typed_data(
            domain_data=SIGNED_KEY_REQUEST_DOMAIN,
            message_types=SIGNED_KEY_REQUEST_TYPES,
            message_data={
                "requestFid": request_fid,
                "key": key,
                "deadline": deadline,
            },
        )
        return "0x" + bytes(signed.signature).hex()
