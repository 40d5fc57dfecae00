#!/usr/bin/env python3
"""
================================================================================
WEB SERVER - JSON Request Layer for the Collection Tree
================================================================================

Flask application exposing the core operations over HTTP. Handlers only
translate bodies to core calls and core results to JSON; every rule lives in
the core.

API Endpoints (prefix /api/collections):
    Tree:
        GET    /                          - Owner's tree (flat, BFS order)
        POST   /                          - Create collection
        PUT    /                          - Update collection (body has id)
        POST   /move                      - Move {collectionId, newParentId, newOrder}
        DELETE /<id>                      - Delete subtree, returns {ids}
        PUT    /<id>/layout               - Set display layout

    Items:
        POST   /<id>/markAsRead           - Mark subtree read, returns {ids}
        GET    /<id>/items                - Items of a subtree ('home' = all)
        GET    /<id>/item/<itemId>        - Item details with full text
        PUT    /<id>/item/<itemId>/dateRead - Mark one item read/unread

    Feeds:
        POST   /<id>/refresh              - Refresh subtree ('home' = all)
        POST   /verifyUrl                 - Probe a feed URL before adding it

Owner Resolution:
    The caller's user id is read from the X-User-Id header. Session and
    authentication handling belong to the deployment in front of this app.

Errors:
    FeedTreeError subclasses answer {errorCode, message} with their
    http_status (400/404/409/502/500).
================================================================================
"""

import logging

from flask import Blueprint, Flask, current_app, g, jsonify, request

from feedtree.core.context import ServiceContext
from feedtree.core.errors import FeedTreeError, ValidationError
from feedtree.core.models import (
    collection_to_dict,
    from_timestamp,
    item_to_dict,
    spec_from_dict,
    tree_node_to_dict,
)
from feedtree.core.mutations import MutationEngine
from feedtree.core.refresh import RefreshScheduler
from feedtree.core.tree import TreeStore
from feedtree.utils.config import load_config
from feedtree.utils.logger import setup_logging

logger = logging.getLogger("feedtree")

HOME = 'home'

collections_bp = Blueprint('collections', __name__, url_prefix='/api/collections')


class Services:
    """Core components bound to one ServiceContext.

    The refresh scheduler is shared with the background job manager when one
    is given, so route-driven and scheduled refreshes use one in-flight set.
    """

    def __init__(self, context: ServiceContext, job_manager=None):
        self.context = context
        self.tree = TreeStore(context)
        if job_manager is not None:
            self.refresh = job_manager.refresh
        else:
            self.refresh = RefreshScheduler(context)
        self.fetcher = self.refresh.fetcher
        self.mutations = MutationEngine(
            context,
            on_created=job_manager.trigger_now if job_manager is not None else None,
        )


def _services() -> Services:
    return current_app.extensions['feedtree']


def _body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _collection_id(value: str, allow_home: bool = False):
    if value == HOME:
        if allow_home:
            return None
        raise ValidationError(f"Operation not allowed on the '{HOME}' collection")
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Invalid collection id '{value}'")


@collections_bp.before_request
def resolve_owner():
    raw = request.headers.get('X-User-Id', '')
    if not raw.isdigit():
        return jsonify({'errorCode': 401, 'message': 'Authentication required'}), 401
    g.owner_id = int(raw)


# ====================================================================================
# TREE
# ====================================================================================

@collections_bp.route('', methods=['GET'])
def get_tree():
    nodes = _services().tree.list_tree(g.owner_id)
    return jsonify([tree_node_to_dict(node) for node in nodes])


@collections_bp.route('', methods=['POST'])
def create_collection():
    collection = _services().mutations.create(g.owner_id, spec_from_dict(_body()))
    return jsonify(collection_to_dict(collection)), 201


@collections_bp.route('', methods=['PUT'])
def update_collection():
    body = _body()
    collection_id = body.get('id')
    if not isinstance(collection_id, int) or isinstance(collection_id, bool):
        raise ValidationError("id must be an integer")
    collection = _services().mutations.update(g.owner_id, collection_id, spec_from_dict(body))
    return jsonify(collection_to_dict(collection))


@collections_bp.route('/move', methods=['POST'])
def move_collection():
    body = _body()
    nodes = _services().mutations.move(
        g.owner_id, body.get('collectionId'), body.get('newParentId'), body.get('newOrder'),
    )
    return jsonify([tree_node_to_dict(node) for node in nodes])


@collections_bp.route('/<collection_id>', methods=['DELETE'])
def delete_collection(collection_id):
    deleted = _services().mutations.delete(g.owner_id, _collection_id(collection_id))
    return jsonify({'ids': sorted(deleted)})


@collections_bp.route('/<collection_id>/layout', methods=['PUT'])
def set_layout(collection_id):
    _services().mutations.set_layout(g.owner_id, _collection_id(collection_id), _body().get('layout'))
    return jsonify(True)


# ====================================================================================
# ITEMS
# ====================================================================================

@collections_bp.route('/<collection_id>/markAsRead', methods=['POST'])
def mark_as_read(collection_id):
    ids = _services().mutations.mark_as_read(g.owner_id, _collection_id(collection_id))
    return jsonify({'ids': sorted(ids)})


@collections_bp.route('/<collection_id>/items', methods=['GET'])
def list_items(collection_id):
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)
    items = _services().tree.list_items(
        g.owner_id, _collection_id(collection_id, allow_home=True), limit=limit, offset=offset,
    )
    return jsonify([item_to_dict(item, include_full_text=False) for item in items])


@collections_bp.route('/<collection_id>/item/<int:item_id>', methods=['GET'])
def get_item(collection_id, item_id):
    item = _services().tree.get_item(g.owner_id, _collection_id(collection_id), item_id)
    return jsonify(item_to_dict(item))


@collections_bp.route('/<collection_id>/item/<int:item_id>/dateRead', methods=['PUT'])
def set_item_date_read(collection_id, item_id):
    date_read = _body().get('dateRead')
    if date_read is not None and (not isinstance(date_read, (int, float)) or isinstance(date_read, bool)):
        raise ValidationError("dateRead must be a unix timestamp or null")
    _services().mutations.set_item_date_read(
        g.owner_id, _collection_id(collection_id), item_id, from_timestamp(date_read),
    )
    return jsonify(True)


# ====================================================================================
# FEEDS
# ====================================================================================

@collections_bp.route('/<collection_id>/refresh', methods=['POST'])
def refresh_collection(collection_id):
    services = _services()
    root_id = _collection_id(collection_id, allow_home=True)
    if root_id is None:
        result = services.refresh.refresh_all(g.owner_id)
    else:
        result = services.refresh.refresh_subtree(g.owner_id, root_id)

    if not result.ok:
        noun = 'Feeds' if len(result.outcomes) > 1 else 'Feed'
        return jsonify({'errorCode': 500, 'message': f'{noun} failed to refresh.'}), 500

    if root_id is None:
        ids = sorted(result.outcomes)
    else:
        ids = sorted(services.tree.list_descendant_ids(root_id))
    return jsonify({'ids': ids})


@collections_bp.route('/verifyUrl', methods=['POST'])
def verify_url():
    return jsonify(_services().fetcher.probe(g.owner_id, _body().get('url')))


# ====================================================================================
# APP FACTORY
# ====================================================================================

def handle_feedtree_error(error: FeedTreeError):
    if error.http_status >= 500:
        logger.error(f"[WEB] {request.method} {request.path}: {error}")
    return jsonify({'errorCode': error.http_status, 'message': error.message}), error.http_status


def create_app(context: ServiceContext, job_manager=None) -> Flask:
    app = Flask(__name__)
    app.extensions['feedtree'] = Services(context, job_manager)
    app.register_blueprint(collections_bp)
    app.register_error_handler(FeedTreeError, handle_feedtree_error)
    return app


def main(config_file=None):
    from feedtree.web.scheduler import RefreshJobManager

    setup_logging('web')
    config = load_config(config_file)
    context = ServiceContext.from_config(config)
    job_manager = RefreshJobManager(RefreshScheduler(context), config['refresh']['check_interval_minutes'])
    app = create_app(context, job_manager)
    job_manager.start()
    try:
        app.run(host=config['web']['host'], port=config['web']['port'])
    finally:
        job_manager.shutdown()
        context.close()


if __name__ == '__main__':
    main()
