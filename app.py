import logging
from functools import wraps
from typing import Optional

from flask import Flask, jsonify, request, session
from werkzeug.exceptions import HTTPException
from werkzeug.routing import IntegerConverter
from werkzeug.security import check_password_hash, generate_password_hash

from booking_rules import (
    MAX_SQLITE_INT,
    ROLE_OWNER,
    ROLE_USER,
    booking_window,
    compute_total_price,
    parse_timestamp,
)
from parking_config import Config
from parking_errors import InvalidArgumentError, NotFoundError, ParkingServiceError
from parking_system import ParkingBookingSystem


class RowIdConverter(IntegerConverter):
    """<int:...> URL segment limited to what an SQLite INTEGER holds"""

    def __init__(self, url_map, *args, **kwargs):
        kwargs.setdefault('max', MAX_SQLITE_INT)
        super().__init__(url_map, *args, **kwargs)


app = Flask(__name__)
app.url_map.converters['int'] = RowIdConverter
app.config.from_object(Config)

logging.basicConfig(
    level=app.config['LOG_LEVEL'],
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
)
logger = logging.getLogger(__name__)

parking = ParkingBookingSystem(app.config['DATABASE'], seed_demo_data=app.config['SEED_DEMO_DATA'])


def success_response(data=None, message: str = "Success", status_code: int = 200):
    """Standardise successful API responses."""
    response = jsonify({
        'success': True,
        'data': data or {},
        'message': message
    })
    response.status_code = status_code
    return response


def error_response(message: str = "An error occurred", status_code: int = 400, data=None):
    """Standardise API error responses."""
    response = jsonify({
        'success': False,
        'data': data or {},
        'message': message
    })
    response.status_code = status_code
    return response


def is_logged_in() -> bool:
    return session.get('user_id') is not None


def is_owner() -> bool:
    return session.get('user_role') == ROLE_OWNER


def get_active_user_id() -> Optional[int]:
    return session.get('user_id')


def set_active_user(user: Optional[dict]):
    session.clear()
    if user:
        session['user_id'] = user['user_id']
        session['user_role'] = user['role']


def login_required(view):
    @wraps(view)
    def wrapped_view(*args, **kwargs):
        if not is_logged_in():
            return error_response('Authentication required', 401)
        return view(*args, **kwargs)

    return wrapped_view


def owner_required(view):
    @wraps(view)
    def wrapped_view(*args, **kwargs):
        if not is_logged_in():
            return error_response('Authentication required', 401)
        if not is_owner():
            return error_response('Owner access required', 403)
        return view(*args, **kwargs)

    return wrapped_view


def get_json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidArgumentError('A JSON object body is required')
    return data


def require_fields(data: dict, *names: str):
    missing = [name for name in names if data.get(name) in (None, '')]
    if missing:
        raise InvalidArgumentError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


def as_int(value, name: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidArgumentError(f'{name} must be a valid integer')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f'{name} must be a valid integer')
    if abs(number) > MAX_SQLITE_INT:
        raise InvalidArgumentError(f'{name} is out of range')
    return number


def public_user(user: dict) -> dict:
    return {key: value for key, value in user.items() if key != 'password_hash'}


# ===== AUTH =====

@app.route('/api/auth/register', methods=['POST'])
def api_register():
    data = get_json_body()
    require_fields(data, 'username', 'password', 'full_name', 'email')
    role = data.get('role') or ROLE_USER
    user = parking.register_user(
        data['username'],
        generate_password_hash(data['password']),
        data['full_name'],
        data['email'],
        data.get('phone_number'),
        role
    )
    set_active_user(user)
    return success_response({'user': public_user(user)}, 'Account created successfully', 201)


@app.route('/api/auth/login', methods=['POST'])
def api_login():
    data = get_json_body()
    require_fields(data, 'username', 'password')
    credentials = parking.get_user_credentials(data['username'])
    if not credentials or not check_password_hash(credentials['password_hash'], data['password']):
        logger.warning("✗ Failed login for %s", data['username'])
        return error_response('Invalid username or password', 401)

    user = parking.get_user_by_id(credentials['user_id'])
    set_active_user(user)
    return success_response({'user': public_user(user)}, 'Logged in successfully')


@app.route('/api/auth/logout', methods=['POST'])
def api_logout():
    """Clear the current session."""
    session.clear()
    return success_response(message='Logged out successfully')


@app.route('/api/auth/me')
@login_required
def api_me():
    user = parking.get_user_by_id(get_active_user_id())
    if not user:
        session.clear()
        return error_response('User not found', 404)
    return success_response({'user': public_user(user)}, 'User profile fetched successfully')


# ===== PARKING LOTS =====

@app.route('/api/parking-lots')
def api_parking_lots():
    lots = parking.list_parking_lots()
    return success_response({'parking_lots': lots}, 'Parking lots fetched successfully')


@app.route('/api/parking-lots/<int:lot_id>')
def api_parking_lot(lot_id: int):
    lot = parking.get_parking_lot(lot_id)
    if not lot:
        raise NotFoundError('Parking lot not found')
    return success_response({'parking_lot': lot}, 'Parking lot fetched successfully')


@app.route('/api/owner/parking-lots')
@owner_required
def api_owner_parking_lots():
    lots = parking.get_parking_lots_by_owner(get_active_user_id())
    return success_response({'parking_lots': lots}, 'Owner parking lots fetched successfully')


@app.route('/api/parking-lots', methods=['POST'])
@owner_required
def api_create_parking_lot():
    data = get_json_body()
    fields = {key: value for key, value in data.items() if key != 'layouts'}
    lot = parking.create_parking_lot(get_active_user_id(), fields, data.get('layouts'))
    return success_response({'parking_lot': lot}, 'Parking lot registered successfully', 201)


@app.route('/api/parking-lots/<int:lot_id>', methods=['PATCH'])
@owner_required
def api_update_parking_lot(lot_id: int):
    data = get_json_body()
    lot = parking.update_parking_lot(lot_id, get_active_user_id(), data)
    return success_response({'parking_lot': lot}, 'Parking lot updated successfully')


# ===== LAYOUTS & SPACES =====

@app.route('/api/parking-lots/<int:lot_id>/layouts')
def api_layouts(lot_id: int):
    layouts = parking.get_layouts(lot_id)
    return success_response({'layouts': layouts}, 'Parking layouts fetched successfully')


@app.route('/api/parking-lots/<int:lot_id>/layouts', methods=['POST'])
@owner_required
def api_add_layout(lot_id: int):
    data = get_json_body()
    layouts = parking.add_layout(lot_id, get_active_user_id(), data)
    lot = parking.get_parking_lot(lot_id)
    return success_response({'layouts': layouts, 'parking_lot': lot}, 'Parking layout added successfully', 201)


@app.route('/api/parking-lots/<int:lot_id>/spaces')
def api_spaces(lot_id: int):
    spaces = parking.list_spaces(lot_id)
    return success_response({'spaces': spaces}, 'Parking spaces fetched successfully')


@app.route('/api/parking-lots/<int:lot_id>/spaces/<space_id>/status', methods=['PATCH'])
@owner_required
def api_update_space_status(lot_id: int, space_id: str):
    data = get_json_body()
    require_fields(data, 'status')
    space = parking.update_slot_status(lot_id, space_id, data['status'], get_active_user_id())
    lot = parking.get_parking_lot(lot_id)
    return success_response({'space': space, 'parking_lot': lot}, 'Parking space status updated successfully')


@app.route('/api/parking-lots/<int:lot_id>/summary')
@owner_required
def api_lot_summary(lot_id: int):
    summary = parking.get_availability_summary(lot_id, get_active_user_id())
    return success_response(summary, 'Availability summary fetched successfully')


# ===== BOOKINGS =====

def resolve_pricing(data: dict, lot: dict):
    """Fill total_price and end_time from pricing_mode + quantity when given."""
    start_time = parse_timestamp(data.get('start_time'))
    end_time = data.get('end_time')
    total_price = data.get('total_price')

    mode = data.get('pricing_mode')
    if mode:
        require_fields(data, 'quantity')
        quoted = compute_total_price(lot['price_per_hour'], mode, data['quantity'])
        if total_price is not None and as_int(total_price, 'total_price') != quoted:
            raise InvalidArgumentError('total_price does not match the selected pricing')
        total_price = quoted
        _, window_end = booking_window(start_time, mode, data['quantity'])
        if not end_time:
            end_time = window_end
        elif parse_timestamp(end_time) != window_end:
            raise InvalidArgumentError('end_time does not match the selected pricing')

    if end_time in (None, '') or total_price is None:
        raise InvalidArgumentError('end_time and total_price, or pricing_mode and quantity, are required')
    return start_time, parse_timestamp(end_time), as_int(total_price, 'total_price')


@app.route('/api/bookings')
@login_required
def api_bookings():
    bookings = parking.get_bookings(user_id=get_active_user_id(), status=request.args.get('status'))
    return success_response({'bookings': bookings}, 'Bookings fetched successfully')


@app.route('/api/bookings', methods=['POST'])
@login_required
def api_create_booking():
    data = get_json_body()
    require_fields(data, 'parking_lot_id', 'parking_space_id', 'start_time')
    lot_id = as_int(data['parking_lot_id'], 'parking_lot_id')
    lot = parking.get_parking_lot(lot_id)
    if not lot:
        raise NotFoundError('Parking lot not found')

    start_time, end_time, total_price = resolve_pricing(data, lot)
    booking = parking.create_booking(
        get_active_user_id(),
        lot_id,
        str(data['parking_space_id']),
        start_time,
        end_time,
        total_price
    )
    return success_response({'booking': booking}, 'Booking created successfully', 201)


@app.route('/api/bookings/<int:booking_id>')
@login_required
def api_booking_details(booking_id: int):
    booking = parking.get_booking(booking_id)
    if not booking:
        raise NotFoundError('Booking not found')
    if not parking.can_view_booking(booking, get_active_user_id()):
        return error_response('Access denied', 403)
    return success_response({'booking': booking}, 'Booking details fetched successfully')


@app.route('/api/bookings/<int:booking_id>/status', methods=['PATCH'])
@login_required
def api_update_booking_status(booking_id: int):
    data = get_json_body()
    require_fields(data, 'status')
    booking = parking.update_booking_status(booking_id, data['status'], get_active_user_id())
    lot = parking.get_parking_lot(booking['parking_lot_id'])
    return success_response({'booking': booking, 'parking_lot': lot}, 'Booking status updated successfully')


@app.route('/api/parking-lots/<int:lot_id>/bookings')
@owner_required
def api_lot_bookings(lot_id: int):
    bookings = parking.get_lot_bookings(lot_id, get_active_user_id(), request.args.get('status'))
    return success_response({'bookings': bookings}, 'Bookings fetched successfully')


@app.route('/api/pricing/quote', methods=['POST'])
def api_pricing_quote():
    data = get_json_body()
    require_fields(data, 'pricing_mode', 'quantity')
    if data.get('parking_lot_id') is not None:
        lot = parking.get_parking_lot(as_int(data['parking_lot_id'], 'parking_lot_id'))
        if not lot:
            raise NotFoundError('Parking lot not found')
        price_per_hour = lot['price_per_hour']
    else:
        require_fields(data, 'price_per_hour')
        price_per_hour = as_int(data['price_per_hour'], 'price_per_hour')

    quote = {
        'pricing_mode': data['pricing_mode'],
        'quantity': data['quantity'],
        'total_price': compute_total_price(price_per_hour, data['pricing_mode'], data['quantity'])
    }
    if data.get('start_time'):
        start_time, end_time = booking_window(parse_timestamp(data['start_time']),
                                              data['pricing_mode'], data['quantity'])
        quote['start_time'] = start_time.isoformat()
        quote['end_time'] = end_time.isoformat()
    return success_response(quote, 'Price computed successfully')


# ===== REVIEWS =====

@app.route('/api/parking-lots/<int:lot_id>/reviews')
def api_reviews(lot_id: int):
    reviews = parking.get_reviews(lot_id)
    return success_response({'reviews': reviews}, 'Reviews fetched successfully')


@app.route('/api/reviews', methods=['POST'])
@login_required
def api_create_review():
    data = get_json_body()
    require_fields(data, 'parking_lot_id', 'rating')
    review = parking.create_review(
        get_active_user_id(),
        as_int(data['parking_lot_id'], 'parking_lot_id'),
        as_int(data['rating'], 'rating'),
        data.get('comment')
    )
    return success_response({'review': review}, 'Review added successfully', 201)


# ===== ERRORS =====

@app.errorhandler(ParkingServiceError)
def service_error(error: ParkingServiceError):
    return error_response(error.message, error.status_code)


@app.errorhandler(HTTPException)
def http_error(error: HTTPException):
    return error_response(error.description or error.name, error.code)


@app.errorhandler(500)
def server_error(error):
    logger.error("✗ Unhandled error on %s: %s", request.path, error)
    return error_response('An internal server error occurred.', 500)


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000, debug=True)
