import argparse
import logging
import os
import sys

import qrcode

from aliyundrive_fuse.auth import TokenManager, TokenStore
from aliyundrive_fuse.cache import EntryCache
from aliyundrive_fuse.config.manager import MOBILE_TOKEN_PREFIX, DriveConfig, load_settings
from aliyundrive_fuse.drive_client.aliyun_drive import AliyunDrive
from aliyundrive_fuse.drive_client.client import AuthClient
from aliyundrive_fuse.errors import ConfigError, DriveError, LoginFailedError, RefreshTokenRevokedError
from aliyundrive_fuse.fs.drive_fs import AliyunDriveFS, mount_daemon
from aliyundrive_fuse.fs.resolver import PathResolver
from aliyundrive_fuse.login import LoginFlow, QrCodeScanner

logger = logging.getLogger("aliyundrive_fuse")


def configure_logging(debug: bool):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%H:%M:%S'
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def print_qr(session):
    qr = qrcode.QRCode(border=1)
    qr.add_data(session.qr_content)
    qr.print_ascii(invert=True)
    logger.info("Please scan the QR code with the Aliyun Drive app within 30 seconds")


def login() -> str:
    flow = LoginFlow(QrCodeScanner())
    try:
        return flow.run(on_qr_ready=print_qr)
    except KeyboardInterrupt:
        flow.cancel()
        raise LoginFailedError("Login cancelled")


def resolve_refresh_token(settings, store):
    """CLI/env token first, then the one saved in the workdir, then QR login."""
    if settings["refresh_token"]:
        return settings["refresh_token"]
    if store is not None:
        saved = store.load()
        if saved:
            logger.info(f"Using refresh token from {store.path}")
            return saved
    if settings["domain_id"]:
        raise ConfigError("A refresh token is required for PDS domains")

    logger.info("No refresh token available, starting QR code login...")
    # Tokens from the app login are refreshed at the app endpoint
    token = MOBILE_TOKEN_PREFIX + login()
    if store is not None:
        store.save(token)
    return token


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Mount an Aliyun Drive account as a FUSE filesystem")
    parser.add_argument("mount_point", nargs="?", help="Directory to mount the drive on")
    parser.add_argument("--config", help="Path to a YAML settings file")
    parser.add_argument("-r", "--refresh-token", help="Aliyun Drive refresh token")
    parser.add_argument("--root", help="Remote directory to expose as the filesystem root")
    parser.add_argument("-w", "--workdir", help="Working directory; the refresh token is stored there")
    parser.add_argument("--cache-size", type=int, help="Directory entries cache size")
    parser.add_argument("--cache-ttl", type=int, help="Directory entries cache expiration time in seconds")
    parser.add_argument("-S", "--read-buffer-size", type=int, help="Read/download buffer size in bytes")
    parser.add_argument("--upload-chunk-size", type=int, help="Upload part size in bytes")
    parser.add_argument("--no-trash", action="store_true", default=None,
                        help="Delete files permanently instead of trashing them")
    parser.add_argument("--domain-id", help="Aliyun PDS domain id")
    parser.add_argument("--read-only", action="store_true", default=None, help="Mount read-only")
    parser.add_argument("--allow-other", action="store_true", default=None,
                        help="Allow other users to access the mount")
    parser.add_argument("--debug", action="store_true", default=None, help="Enable debug log")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if k != "config"}

    try:
        settings = load_settings(args.config, overrides)
    except ConfigError as e:
        configure_logging(False)
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    configure_logging(settings["debug"])

    if not settings["mount_point"]:
        logger.error("No mount point given (argument or ALIYUNDRIVE_MOUNT)")
        sys.exit(2)

    workdir = settings["workdir"]
    store = TokenStore(workdir) if workdir else None

    try:
        refresh_token = resolve_refresh_token(settings, store)
    except (ConfigError, LoginFailedError) as e:
        logger.error(f"Login failed: {e}")
        sys.exit(1)

    drive_config = DriveConfig.for_variant(settings["domain_id"], workdir)
    # PDS doesn't have trash support
    no_trash = True if drive_config.is_pds else settings["no_trash"]

    tokens = TokenManager(refresh_token, AuthClient(drive_config), store=store)
    drive = AliyunDrive(drive_config, tokens)
    cache = EntryCache(capacity=settings["cache_size"], ttl=settings["cache_ttl"])
    resolver = PathResolver(drive, cache, root=settings["root"])

    try:
        tokens.get_valid_credential()
        root_entry = resolver.resolve("/")
    except RefreshTokenRevokedError as e:
        logger.error(f"{e}. Remove {store.path if store else 'the token'} and log in again.")
        sys.exit(1)
    except DriveError as e:
        logger.error(f"Failed to open drive root {settings['root']}: {e}")
        sys.exit(1)
    if not root_entry.is_dir:
        logger.error(f"Root {settings['root']} is not a directory")
        sys.exit(1)
    logger.debug("drive file system initialized")

    fs = AliyunDriveFS(
        drive,
        resolver,
        cache,
        read_only=settings["read_only"],
        no_trash=no_trash,
        read_buffer_size=settings["read_buffer_size"],
        upload_chunk_size=settings["upload_chunk_size"],
    )

    mount_point = os.path.abspath(settings["mount_point"])
    try:
        mount_daemon(fs, mount_point, allow_other=settings["allow_other"])
    except KeyboardInterrupt:
        logger.info("\nStopping...")
        sys.exit(0)
    except RuntimeError as e:
        logger.error(f"FUSE Error: {e}")
        logger.info(f"Try running: fusermount -u {mount_point}")
        sys.exit(1)


if __name__ == "__main__":
    main()
