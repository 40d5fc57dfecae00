#!/usr/bin/env python3
"""
================================================================================
CLI - Command Line Interface
================================================================================

Provides command-line access to the collection tree and feed refresh:
    - Database initialization
    - Tree listing, creation, moves and deletes
    - Marking collections read
    - Manual and due-only feed refresh
    - Feed URL probing
    - Web API launcher with the background refresh job

Features:
    - Rich text formatting with ANSI colors
    - JSON output for tree/item listings
    - Error handling with user-friendly messages

Usage:
    python cli.py [command] [options]
    python cli.py --help
================================================================================
"""

import sys
import json
import argparse
from pathlib import Path
from typing import Any

from feedtree.core.context import ServiceContext
from feedtree.core.errors import FeedTreeError
from feedtree.core.models import CollectionSpec, collection_to_dict, tree_node_to_dict
from feedtree.core.mutations import MutationEngine
from feedtree.core.refresh import RefreshScheduler
from feedtree.core.tree import TreeStore
from feedtree.processors.feed_fetcher import FeedFetcher
from feedtree.utils.config import load_config
from feedtree.utils.constants import DEFAULT_ICON, DEFAULT_LAYOUT, DEFAULT_REFRESH_INTERVAL
from feedtree.utils.logger import set_run_context


# ANSI color codes
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def _pretty_json(payload: Any):
    """Render JSON to stdout with stable formatting."""
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def print_header(text):
    """Print formatted header"""
    print(f"\n{Colors.BOLD}{Colors.BLUE}{'=' * 70}{Colors.ENDC}")
    print(f"{Colors.BOLD}{Colors.CYAN}{text:^70}{Colors.ENDC}")
    print(f"{Colors.BOLD}{Colors.BLUE}{'=' * 70}{Colors.ENDC}\n")


def print_success(text):
    """Print success message"""
    print(f"{Colors.GREEN}✓{Colors.ENDC} {text}")


def print_error(text):
    """Print error message"""
    print(f"{Colors.RED}✗{Colors.ENDC} {text}")


def print_info(text):
    """Print info message"""
    print(f"{Colors.CYAN}ℹ{Colors.ENDC} {text}")


def _context(args) -> ServiceContext:
    config_file = Path(args.config) if getattr(args, 'config', None) else None
    return ServiceContext.from_config(load_config(config_file))


def _report_batch(result) -> bool:
    for cid, outcome in sorted(result.outcomes.items()):
        if outcome.status == 'failed':
            print_error(f"Collection {cid}: {outcome.error}")
        elif outcome.status == 'skipped':
            print_info(f"Collection {cid}: already refreshing, skipped")
        else:
            print_success(f"Collection {cid}: {outcome.inserted} new, {outcome.updated} updated")
    if not result.outcomes:
        print_info("Nothing to refresh")
    return result.ok


# ==================================
# TREE
# ==================================

def cmd_init_db(args):
    context = _context(args)
    with context.session() as db:
        print_success(f"Database ready at {db.db_file}")
    context.close()
    return True


def cmd_tree(args):
    context = _context(args)
    nodes = TreeStore(context).list_tree(args.owner)
    if args.json:
        _pretty_json([tree_node_to_dict(node) for node in nodes])
        return True

    children = {}
    for node in nodes:
        children.setdefault(node.collection.parent_id, []).append(node)

    def show(parent_id):
        for node in children.get(parent_id, []):
            c = node.collection
            badge = f" ({node.unread_count})" if node.unread_count else ""
            feed = f"  {Colors.YELLOW}{c.url}{Colors.ENDC}" if c.url else ""
            print(f"{'  ' * node.depth}[{c.id}] {c.title}{badge}{feed}")
            show(c.id)

    print_header(f"Collections of owner {args.owner}")
    show(None)
    return True


def cmd_add(args):
    context = _context(args)
    spec = CollectionSpec(
        title=args.title,
        icon=args.icon,
        parent_id=args.parent,
        description=args.description,
        url=args.url,
        refresh_interval=args.refresh_interval,
        layout=args.layout,
    )
    collection = MutationEngine(context).create(args.owner, spec)
    print_success(f"Collection {collection.id} '{collection.title}' created")
    _pretty_json(collection_to_dict(collection))
    return True


def cmd_move(args):
    context = _context(args)
    MutationEngine(context).move(args.owner, args.id, args.parent, args.order)
    print_success(f"Collection {args.id} moved under {args.parent or 'root'} at position {args.order}")
    return True


def cmd_delete(args):
    context = _context(args)
    deleted = MutationEngine(context).delete(args.owner, args.id)
    print_success(f"Deleted collection(s): {sorted(deleted)}")
    return True


def cmd_mark_read(args):
    context = _context(args)
    ids = MutationEngine(context).mark_as_read(args.owner, args.id)
    print_success(f"Marked read: {sorted(ids)}")
    return True


def cmd_recalculate_order(args):
    context = _context(args)
    MutationEngine(context).recalculate_order(args.owner)
    print_success("Sibling order recalculated")
    return True


# ==================================
# FEEDS
# ==================================

def cmd_refresh(args):
    context = _context(args)
    refresh = RefreshScheduler(context)
    try:
        if args.id is None:
            result = refresh.refresh_all(args.owner)
        else:
            result = refresh.refresh_subtree(args.owner, args.id)
        return _report_batch(result)
    finally:
        context.close()


def cmd_refresh_due(args):
    context = _context(args)
    try:
        return _report_batch(RefreshScheduler(context).refresh_due(args.owner))
    finally:
        context.close()


def cmd_probe(args):
    context = _context(args)
    try:
        _pretty_json(FeedFetcher(context).probe(args.owner, args.url))
        return True
    finally:
        context.close()


def cmd_web(args):
    from feedtree.web import server as web_server

    print_info("Starting web API (Ctrl+C to stop)")
    web_server.main(Path(args.config) if args.config else None)
    return True


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description='feedtree - Collection hierarchy & feed refresh',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s init-db                              # Create the database schema
  %(prog)s tree --owner 1                       # Show owner 1's tree
  %(prog)s add --owner 1 --title News --url https://example.com/rss
  %(prog)s move --owner 1 --id 4 --parent 2 --order 0
  %(prog)s refresh --owner 1 --id 2             # Refresh a subtree
  %(prog)s refresh-due                          # Refresh everything due
  %(prog)s web                                  # Start web API + scheduler
        '''
    )
    parser.add_argument('--config', help='Path to config.json (default: configs/config.json)')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    parser_init = subparsers.add_parser('init-db', help='Create database schema')
    parser_init.set_defaults(func=cmd_init_db)

    parser_tree = subparsers.add_parser('tree', help='Show collection tree')
    parser_tree.add_argument('--owner', type=int, required=True)
    parser_tree.add_argument('--json', action='store_true', help='Print flat tree as JSON')
    parser_tree.set_defaults(func=cmd_tree)

    parser_add = subparsers.add_parser('add', help='Create a collection')
    parser_add.add_argument('--owner', type=int, required=True)
    parser_add.add_argument('--title', required=True)
    parser_add.add_argument('--url', help='RSS/Atom feed URL')
    parser_add.add_argument('--parent', type=int, help='Parent collection id')
    parser_add.add_argument('--icon', default=DEFAULT_ICON)
    parser_add.add_argument('--description')
    parser_add.add_argument('--refresh-interval', type=int, default=DEFAULT_REFRESH_INTERVAL,
                            help='Minutes between refreshes')
    parser_add.add_argument('--layout', default=DEFAULT_LAYOUT)
    parser_add.set_defaults(func=cmd_add)

    parser_move = subparsers.add_parser('move', help='Move a collection')
    parser_move.add_argument('--owner', type=int, required=True)
    parser_move.add_argument('--id', type=int, required=True)
    parser_move.add_argument('--parent', type=int, help='New parent id (omit for root)')
    parser_move.add_argument('--order', type=int, required=True, help='Position among new siblings')
    parser_move.set_defaults(func=cmd_move)

    parser_delete = subparsers.add_parser('delete', help='Delete a collection and its subtree')
    parser_delete.add_argument('--owner', type=int, required=True)
    parser_delete.add_argument('--id', type=int, required=True)
    parser_delete.set_defaults(func=cmd_delete)

    parser_read = subparsers.add_parser('mark-read', help='Mark a subtree as read')
    parser_read.add_argument('--owner', type=int, required=True)
    parser_read.add_argument('--id', type=int, required=True)
    parser_read.set_defaults(func=cmd_mark_read)

    parser_refresh = subparsers.add_parser('refresh', help='Refresh a subtree (or all feeds)')
    parser_refresh.add_argument('--owner', type=int, required=True)
    parser_refresh.add_argument('--id', type=int, help='Subtree root (omit for all)')
    parser_refresh.set_defaults(func=cmd_refresh)

    parser_due = subparsers.add_parser('refresh-due', help='Refresh every collection that is due')
    parser_due.add_argument('--owner', type=int, help='Limit to one owner')
    parser_due.set_defaults(func=cmd_refresh_due)

    parser_probe = subparsers.add_parser('probe', help='Check a feed URL before adding it')
    parser_probe.add_argument('--owner', type=int, required=True)
    parser_probe.add_argument('url')
    parser_probe.set_defaults(func=cmd_probe)

    parser_order = subparsers.add_parser('recalculate-order', help='Repair sibling order numbering')
    parser_order.add_argument('--owner', type=int, help='Limit to one owner')
    parser_order.set_defaults(func=cmd_recalculate_order)

    parser_web = subparsers.add_parser('web', help='Start web API and refresh scheduler')
    parser_web.set_defaults(func=cmd_web)

    # Parse arguments
    args = parser.parse_args()

    # If no command specified, show help
    if not args.command:
        parser.print_help()
        return 0

    if args.command != 'web':
        set_run_context('cli')

    # Run command
    try:
        success = args.func(args)
        return 0 if success else 1
    except FeedTreeError as e:
        print_error(e.message)
        return 1
    except KeyboardInterrupt:
        print_info("\nOperation cancelled by user")
        return 130


if __name__ == '__main__':
    sys.exit(main())
