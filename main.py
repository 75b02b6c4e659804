#!/usr/bin/env python3
"""
Audit Findings Query Engine - Main Entry Point

Usage:
    python main.py ask "question"   # Answer one question
    python main.py chat             # Interactive multi-turn session
    python main.py setup            # Validate configuration
"""
import os
import sys
import json
import argparse
import logging
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

DEFAULT_TRANSCRIPT = PROJECT_ROOT / "sessions" / "transcript.jsonl"

logger = logging.getLogger(__name__)

def configure_logging():
    """Stream and file handlers; level from LOG_LEVEL."""
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler('engine.log'),
        ]
    )

def setup_environment():
    """Load environment variables from .env file if present."""
    env_file = PROJECT_ROOT / '.env'
    if env_file.exists():
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip())

def build_engine(persist_transcript: bool):
    from config.settings import get_config
    from src.agents.audit_query_engine import create_audit_query_engine

    config = get_config()
    # Continuing a session across invocations needs an on-disk transcript
    if persist_transcript and not config.engine.transcript_path:
        config.engine.transcript_path = str(DEFAULT_TRANSCRIPT)
    return create_audit_query_engine(config)

def print_response(response):
    """Print an EngineResponse as a small text report."""
    print("\n" + "="*60)
    print(response.answer_text)
    print("="*60)

    if response.rows:
        for row in response.rows:
            year = row.get('year') if row.get('year') is not None else '-'
            print(f"  {year} | {row.get('projectName', '')[:28]:<28} | "
                  f"{row.get('department', '')[:22]:<22} | {row.get('code', ''):<3} | "
                  f"{row.get('description', '')[:40]}")
        if response.truncated:
            print(f"  ... {response.total_count} in total")

    if response.series and response.series.get('categories'):
        print("\n" + "-"*60)
        categories = response.series['categories']
        for series in response.series['series']:
            values = ", ".join(f"{c}: {v}" for c, v in zip(categories, series['values']))
            print(f"  {series['name']}: {values}")

    if response.error:
        print(f"\n❌ {response.error.get('category')}: {response.error.get('message')}")
    elif response.low_confidence:
        print(f"\n⚠️  Low confidence ({response.confidence}); turn treated as {response.turn_type}")

def write_export(engine, request, output_dir):
    """Export every row behind ``request`` to a JSON file; returns the path, or None on failure."""
    result = engine.export_all(request)
    if not result.succeeded:
        print(f"\n❌ Export failed: {result.error.get('category')}: {result.error.get('message')}")
        return None

    path = Path(output_dir) / request.filename()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2, ensure_ascii=False, default=str)
    print(f"\n📄 Exported {result.total_count} rows to {path}")
    return path

def cmd_ask(args):
    """Answer one question, optionally continuing a session."""
    engine = build_engine(persist_transcript=bool(args.session))
    response = engine.answer_sync(args.question, session_id=args.session)
    print_response(response)

    if response.error:
        sys.exit(2)
    if args.export and response.export_request:
        if write_export(engine, response.export_request, args.output_dir) is None:
            sys.exit(2)

def cmd_chat(args):
    """Interactive multi-turn session."""
    engine = build_engine(persist_transcript=bool(args.session))
    session_id = args.session or engine.sessions.new_session_id()
    print(f"Session {session_id}. Type 'exit' to quit, 'export' to export the last result.")

    last = None
    while True:
        try:
            text = input("\n> ").strip()
        except EOFError:
            break
        if not text:
            continue
        if text.lower() in ("exit", "quit", "keluar"):
            break
        if text.lower() == "export":
            if last is None or last.export_request is None or last.error:
                print("Nothing to export yet.")
                continue
            write_export(engine, last.export_request, args.output_dir)
            continue

        last = engine.answer_sync(text, session_id=session_id)
        print_response(last)

def cmd_setup(args):
    """Validate configuration and setup."""
    from config.settings import get_config, MODEL_REGISTRY
    from src.data.category_catalog import load_category_catalog

    print("\n" + "="*60)
    print("CONFIGURATION VALIDATION")
    print("="*60)

    config = get_config()

    # Check active model
    print(f"\n📊 Active Model: {config.active_model}")
    try:
        model_config = config.model_config
        print(f"   Provider: {model_config.provider.value}")
        print(f"   Model: {model_config.model_name}")

        api_key_var = model_config.api_key_env
        has_key = bool(os.getenv(api_key_var))
        status = "✅" if has_key else "❌"
        print(f"   {status} API Key ({api_key_var}): {'Set' if has_key else 'MISSING'}")
        print(f"   LLM extraction: {'enabled' if config.llm_available else 'disabled (keyword fallback only)'}")
    except Exception as e:
        print(f"   ❌ Error: {e}")

    # Check store config
    print(f"\n📦 Firestore Configuration:")
    store = config.store
    checks = [
        ("Project ID", store.project_id),
        ("API Token", store.api_token),
    ]
    for name, value in checks:
        status = "✅" if value else "❌"
        print(f"   {status} {name}: {'Set' if value else 'MISSING'}")
    print(f"   Collections: {store.findings_collection}, {store.departments_collection}")
    if store.use_sample_data or not store.is_configured:
        print("   → Using generated sample data")

    # Engine limits
    engine = config.engine
    print(f"\n⚙️  Engine Limits:")
    print(f"   Membership values per query: {engine.cardinality_limit}")
    print(f"   Page size: {engine.page_size}")
    print(f"   Unnarrowed scan cap: {engine.max_scan_rows}")
    print(f"   Rows shown: {engine.display_row_limit}")

    # Category catalogue
    print(f"\n🏷️  Category Catalogue:")
    try:
        catalog = load_category_catalog(config.categories_path)
        print(f"   ✅ Version {catalog.version}: {len(catalog.categories)} categories")
    except Exception as e:
        print(f"   ❌ {config.categories_path}: {e}")

    # Available models
    print(f"\n🤖 Available Models:")
    for name in MODEL_REGISTRY:
        marker = "→" if name == config.active_model else " "
        print(f"   {marker} {name}")

    print("\n" + "="*60)
    print("To switch models, set: ACTIVE_MODEL=<model-name>")
    print("="*60)

def main():
    setup_environment()
    configure_logging()

    parser = argparse.ArgumentParser(
        description="Audit Findings Query Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py ask "show all IT findings 2024"
  python main.py ask "khusus mall ciputra cibubur" --session <id>
  python main.py chat
  python main.py setup

Environment Variables:
  ACTIVE_MODEL          LLM to use (default: gemini-2.0-flash)
  GEMINI_API_KEY        Google AI API key
  FIRESTORE_PROJECT_ID  Firestore project holding audit-results
  USE_SAMPLE_DATA       Use generated findings instead of Firestore
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Ask command
    ask_parser = subparsers.add_parser('ask', help='Answer one question')
    ask_parser.add_argument('question', help='Question about audit findings')
    ask_parser.add_argument('--session', help='Session id to continue')
    ask_parser.add_argument('--export', action='store_true',
                            help='Export every matching row as JSON')
    ask_parser.add_argument('--output-dir', default='exports',
                            help='Directory for exported files')
    ask_parser.set_defaults(func=cmd_ask)

    # Chat command
    chat_parser = subparsers.add_parser('chat', help='Interactive session')
    chat_parser.add_argument('--session', help='Session id to continue')
    chat_parser.add_argument('--output-dir', default='exports',
                             help='Directory for exported files')
    chat_parser.set_defaults(func=cmd_chat)

    # Setup command
    setup_parser = subparsers.add_parser('setup', help='Validate setup')
    setup_parser.set_defaults(func=cmd_setup)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Error: {e}", exc_info=True)
        sys.exit(1)

if __name__ == "__main__":
    main()
