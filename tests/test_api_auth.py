from __future__ import annotations

import unittest

from usbide.api.auth import AuthConfig, require_api_auth


class ApiAuthTests(unittest.TestCase):
    def test_mode_from_env(self) -> None:
        self.assertEqual(AuthConfig.from_env({}).auth_mode, "local_trust")
        self.assertEqual(AuthConfig.from_env({"USBIDE_API_AUTH": " token "}).auth_mode, "token")

    def test_none_allows_everything(self) -> None:
        require_api_auth(AuthConfig(auth_mode="none"), client_host="10.0.0.8", authorization=None)

    def test_local_trust(self) -> None:
        auth = AuthConfig()
        for host in ("127.0.0.1", "::1", "localhost"):
            require_api_auth(auth, client_host=host, authorization=None)
        with self.assertRaises(PermissionError) as cm:
            require_api_auth(auth, client_host="192.168.1.20", authorization=None)
        self.assertIn("USBIDE_API_AUTH=token", str(cm.exception))
        with self.assertRaises(PermissionError):
            require_api_auth(auth, client_host=None, authorization=None)

    def test_token(self) -> None:
        auth = AuthConfig(auth_mode="token")
        env = {"USBIDE_API_TOKEN": "s3cret"}
        require_api_auth(auth, client_host="10.0.0.8", authorization="Bearer s3cret", env=env)
        require_api_auth(auth, client_host="10.0.0.8", authorization="bearer  s3cret ", env=env)
        with self.assertRaises(PermissionError):
            require_api_auth(auth, client_host="127.0.0.1", authorization="Bearer wrong", env=env)
        with self.assertRaises(PermissionError):
            require_api_auth(auth, client_host="127.0.0.1", authorization=None, env=env)

    def test_non_ascii_token_is_rejected_not_crashing(self) -> None:
        with self.assertRaises(PermissionError):
            require_api_auth(AuthConfig(auth_mode="token"), client_host=None, authorization="Bearer caf\u00e9", env={"USBIDE_API_TOKEN": "cafe"})

    def test_token_mode_without_server_token(self) -> None:
        with self.assertRaises(PermissionError) as cm:
            require_api_auth(AuthConfig(auth_mode="token"), client_host="127.0.0.1", authorization="Bearer x", env={})
        self.assertIn("USBIDE_API_TOKEN", str(cm.exception))

    def test_unknown_mode(self) -> None:
        with self.assertRaises(PermissionError):
            require_api_auth(AuthConfig(auth_mode="open-sesame"), client_host="127.0.0.1", authorization=None)


if __name__ == "__main__":
    unittest.main()
