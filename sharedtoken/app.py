import argparse
import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from . import __version__, codec
from .config import SharedTokenConfig, StorageMode, load_config, load_env, validate_config
from .dependencies import Dependencies, check_dependencies
from .directory import DirectoryConnector, DirectoryStore
from .errors import ConfigurationError, MissingSourceValue, StorageError
from .resolver import ResolutionRequest, SharedTokenResolver, build_local_id
from .storage import RelationalStore, get_engine, init_database


def parse_attrs(pairs: Optional[List[str]]) -> Dict[str, List[str]]:
    """Turn repeated NAME=VALUE flags into a multi-valued attribute dict."""
    attributes: Dict[str, List[str]] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise SystemExit(f"Expected NAME=VALUE, got: {pair}")
        name, value = pair.split("=", 1)
        attributes.setdefault(name.strip(), []).append(value)
    return attributes


def directory_connector_from_env(connector_id: Optional[str]) -> Optional[DirectoryConnector]:
    server_url = os.getenv("SHAREDTOKEN_LDAP_URL")
    if not server_url:
        return None
    return DirectoryConnector(
        connector_id=connector_id or "ldap",
        server_url=server_url,
        base_dn=os.environ.get("SHAREDTOKEN_LDAP_BASE_DN", ""),
        filter_template=os.getenv("SHAREDTOKEN_LDAP_FILTER", "(uid={principal})"),
        bind_dn=os.getenv("SHAREDTOKEN_LDAP_BIND_DN"),
        bind_password=os.getenv("SHAREDTOKEN_LDAP_BIND_PASSWORD"),
    )


def require_database_url(config: SharedTokenConfig, url: Optional[str]) -> str:
    url = url or config.database_url
    if not url:
        raise SystemExit("No database URL. Set SHAREDTOKEN_DATABASE_URL or pass --database-url.")
    return url


def cmd_generate(args: argparse.Namespace) -> None:
    config = load_config()
    attributes = parse_attrs(args.attr)
    sources = config.source_attribute_names or list(attributes)
    issuer = args.issuer or config.idp_identifier
    salt = args.salt.encode("utf-8") if args.salt is not None else config.salt
    if not issuer:
        raise SystemExit("No issuer. Set SHAREDTOKEN_IDP_IDENTIFIER or pass --issuer.")
    try:
        local_id = build_local_id(sources, attributes)
    except MissingSourceValue as e:
        raise SystemExit(str(e))
    print(codec.generate(local_id, issuer, salt))


def cmd_init_db(args: argparse.Namespace) -> None:
    config = load_config()
    url = require_database_url(config, args.database_url)
    table = init_database(get_engine(url), table_name=config.table_name, key_column=config.primary_key_name)
    print(f"Table ready: {table.name}")


def cmd_lookup(args: argparse.Namespace) -> None:
    config = load_config()
    url = require_database_url(config, args.database_url)
    store = RelationalStore(get_engine(url), table_name=config.table_name, key_column=config.primary_key_name)
    try:
        token = store.lookup(args.principal)
    except StorageError as e:
        raise SystemExit(str(e))
    if token is None:
        print(f"No sharedToken stored for {args.principal}")
        raise SystemExit(1)
    print(token)


def cmd_resolve(args: argparse.Namespace) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    with input_path.open("r", encoding="utf-8") as f:
        data = json.load(f)

    config = load_config()
    database_store = None
    directory_store = None
    connector = directory_connector_from_env(config.ldap_connector_id)
    if config.mode is StorageMode.DATABASE:
        database_store = RelationalStore(
            get_engine(require_database_url(config, args.database_url)),
            table_name=config.table_name,
            key_column=config.primary_key_name,
        )
    elif connector is not None:
        directory_store = DirectoryStore(connector, config.stored_attribute_name)

    request = ResolutionRequest(
        principal=data.get("principal", ""),
        issuer=data.get("issuer"),
        attributes=data.get("attributes", {}),
        directory_attributes=data.get("directory_attributes", {}),
    )
    if (
        config.mode is StorageMode.DIRECTORY
        and connector is not None
        and "directory_attributes" not in data
    ):
        try:
            request.directory_attributes = connector.resolve_attributes(request.principal, request.attributes)
        except StorageError as e:
            raise SystemExit(str(e))

    resolver = SharedTokenResolver(config, database_store=database_store, directory_store=directory_store)
    result = resolver.resolve(request)
    resolver.logger.log_metrics_summary()
    if not result.ok:
        print(f"No value: {result.error}")
        raise SystemExit(2)
    print(json.dumps(result.as_dict()))


def cmd_check_config(args: argparse.Namespace) -> None:
    config = load_config()
    errors = validate_config(config)
    if errors:
        print("Invalid:")
        for e in errors:
            print(f" - {e}")
        raise SystemExit(2)

    depends = [d.strip() for d in args.depends.split(",") if d.strip()] if args.depends else []
    dependencies = Dependencies(attributes=set(depends))
    database_store = None
    if config.store_database and config.database_url:
        database_store = RelationalStore.from_config(config)
    try:
        warnings = check_dependencies(config, dependencies, database_store=database_store)
    except ConfigurationError as e:
        print(f"Invalid: {e}")
        raise SystemExit(2)
    for w in warnings:
        print(f"[warn] {w}")
    print(f"Valid ({config.mode.value} mode)")


def main():
    load_env()
    parser = argparse.ArgumentParser(prog="sharedtoken", description="Shared token resolution tools")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")
    gen = subparsers.add_parser("generate", help="Compute a sharedToken offline without storing it")
    gen.add_argument("--attr", action="append", help="Source attribute value as NAME=VALUE (repeatable)")
    gen.add_argument("--issuer", help="IdP entity ID (default: SHAREDTOKEN_IDP_IDENTIFIER)")
    gen.add_argument("--salt", help="Salt (default: SHAREDTOKEN_SALT)")
    gen.set_defaults(func=cmd_generate)

    ini = subparsers.add_parser("init-db", help="Create the sharedToken table")
    ini.add_argument("--database-url", help="SQLAlchemy URL (default: SHAREDTOKEN_DATABASE_URL)")
    ini.set_defaults(func=cmd_init_db)

    lkp = subparsers.add_parser("lookup", help="Show the stored sharedToken for a principal")
    lkp.add_argument("--principal", required=True, help="Principal name (database key)")
    lkp.add_argument("--database-url", help="SQLAlchemy URL (default: SHAREDTOKEN_DATABASE_URL)")
    lkp.set_defaults(func=cmd_lookup)

    res = subparsers.add_parser("resolve", help="Resolve a request JSON through the configured store")
    res.add_argument("--input", required=True, help="Path to request JSON (principal, issuer, attributes)")
    res.add_argument("--database-url", help="SQLAlchemy URL (default: SHAREDTOKEN_DATABASE_URL)")
    res.set_defaults(func=cmd_resolve)

    chk = subparsers.add_parser("check-config", help="Validate SHAREDTOKEN_* settings")
    chk.add_argument("--depends", help="Comma-separated ids of declared dependencies")
    chk.set_defaults(func=cmd_check_config)

    args = parser.parse_args()

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        try:
            args.func(args)
        except ConfigurationError as e:
            raise SystemExit(f"Invalid configuration: {e}")
        return

    parser.print_help()


if __name__ == "__main__":
    main()
