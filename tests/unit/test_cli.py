"""
Unit tests for the command line.
"""

import pytest

from gracefulhttp.__main__ import build_parser, config_from_args, create_directory_handler, main
from gracefulhttp.http.request import Request


class TestArguments:
    def test_defaults(self):
        config = config_from_args(build_parser().parse_args([]))

        assert config.protocol == "http"
        assert config.ip == "127.0.0.1"
        assert config.port == 0
        assert config.access_control_allow_request_origin is False

    def test_https_http2_cors(self):
        args = build_parser().parse_args(
            ["public", "--https", "--cert", "c.pem", "--key", "k.pem", "--http2", "--cors", "-p", "3000"]
        )
        config = config_from_args(args)

        assert args.directory == "public"
        assert config.protocol == "https"
        assert config.http2 is True
        assert (config.certificate_file, config.private_key_file) == ("c.pem", "k.pem")
        assert config.port == 3000
        assert config.access_control_allow_request_headers is True

    def test_unknown_cache_strategy(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--cache", "forever"])

    def test_missing_directory(self, tmp_path, capsys):
        assert main([str(tmp_path / "nope")]) == 1
        assert "is not a directory" in capsys.readouterr().err


class TestDirectoryHandler:
    @pytest.mark.asyncio
    async def test_root_serves_index(self, public_dir):
        handler = create_directory_handler(public_dir)
        response = await handler(Request(method="GET", resource="/"))

        assert response.status == 200
        assert response.body == b"<h1>hello</h1>"

    @pytest.mark.asyncio
    async def test_nested_file(self, public_dir):
        handler = create_directory_handler(public_dir, cache_strategy="none")
        response = await handler(Request(method="GET", resource="/sub/a.css"))

        assert response.status == 200
        assert response.headers["cache-control"] == "no-store"

    @pytest.mark.asyncio
    async def test_outside_root_forbidden(self, public_dir):
        handler = create_directory_handler(public_dir / "sub")
        response = await handler(Request(method="GET", resource="/%2e%2e/index.html"))
        assert response.status == 403
