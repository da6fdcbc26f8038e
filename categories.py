from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from models import db, Category, name_taken
from auth import authenticate
from errors import NotFound, Conflict, NOT_BLANK, validate_request_data, commit_or_raise
import logging

categories_bp = Blueprint('categories', __name__)
logger = logging.getLogger(__name__)


class CategorySchema(Schema):
    name = fields.Str(
        required=True,
        validate=[validate.Length(min=1, max=100), NOT_BLANK],
        error_messages={'required': 'Category name is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=500))


def serialize_category(category):
    return {
        'id': category.id,
        'name': category.name,
        'description': category.description,
        'is_active': category.is_active,
        'created_at': category.created_at.isoformat() if category.created_at else None
    }


def get_active_category(category_id):
    category = Category.query.filter_by(id=category_id, is_active=True).first()
    if not category:
        raise NotFound('Category not found')
    return category

# ============================================
# 分類 CRUD (登入即可操作)
# ============================================

@categories_bp.route('', methods=['GET'])
@jwt_required()
def list_categories():
    authenticate()
    categories = Category.query.filter_by(is_active=True).order_by(Category.name).all()
    return jsonify({
        'categories': [serialize_category(c) for c in categories],
        'total': len(categories)
    }), 200


@categories_bp.route('', methods=['POST'])
@jwt_required()
def create_category():
    current_user = authenticate()

    result = validate_request_data(CategorySchema, request.get_json(silent=True))
    name = result['name'].strip()

    if name_taken(Category, name):
        raise Conflict('Category name already exists')

    category = Category(name=name, description=result.get('description'))
    db.session.add(category)
    commit_or_raise(db, 'category creation')

    logger.info(f"Category created: {category.name} by {current_user.email}")

    return jsonify({
        'message': 'Category created successfully',
        'category': serialize_category(category)
    }), 201


@categories_bp.route('/<int:category_id>', methods=['PATCH'])
@jwt_required()
def update_category(category_id):
    current_user = authenticate()
    category = get_active_category(category_id)

    result = validate_request_data(CategorySchema, request.get_json(silent=True), partial=True)

    if 'name' in result:
        name = result['name'].strip()
        if name_taken(Category, name, exclude_id=category.id):
            raise Conflict('Category name already exists')
        category.name = name

    if 'description' in result:
        category.description = result['description']

    commit_or_raise(db, 'category update')
    logger.info(f"Category {category_id} updated by {current_user.email}")

    return jsonify({
        'message': 'Category updated successfully',
        'category': serialize_category(category)
    }), 200


@categories_bp.route('/<int:category_id>', methods=['DELETE'])
@jwt_required()
def delete_category(category_id):
    current_user = authenticate()
    category = get_active_category(category_id)

    category.is_active = False
    commit_or_raise(db, 'category deletion')

    logger.info(f"Category deleted: {category.name} by {current_user.email}")

    return jsonify({'message': 'Category deleted successfully'}), 200
