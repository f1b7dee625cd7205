import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from werkzeug.security import generate_password_hash

from booking_rules import (
    ACTIVE_BOOKING_STATUSES,
    BOOKED_SLOT_STATUS,
    MAX_SQLITE_INT,
    BOOKING_PENDING,
    BOOKING_STATUSES,
    BOOKING_CANCELLED,
    RELEASING_BOOKING_STATUSES,
    ROLE_OWNER,
    ROLE_USER,
    ROLES,
    SLOT_AVAILABLE,
    SLOT_OCCUPIED,
    SLOT_RESERVED,
    SLOT_STATUSES,
    authorize_status_change,
    can_transition,
    format_space_id,
    intervals_overlap,
    parse_space_id,
    parse_timestamp,
    sort_spots,
    validate_booking_status,
    validate_clock_time,
    validate_slot_status,
)
from parking_errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError

logger = logging.getLogger(__name__)

LOT_EDITABLE_FIELDS = (
    'name', 'address', 'latitude', 'longitude', 'price_per_hour',
    'description', 'opening_hour', 'closing_hour', 'images',
)


def _now() -> str:
    # naive UTC, the same clock parse_timestamp normalizes booking times to
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec='seconds')


def _require_int(value, field: str, minimum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(f"{field} must be an integer")
    if minimum is not None and value < minimum:
        raise InvalidArgumentError(f"{field} must be at least {minimum}")
    if value > MAX_SQLITE_INT:
        raise InvalidArgumentError(f"{field} is too large")
    return value


def _require_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"{field} is required")
    return value.strip()


def _coordinate(value, field: str, limit: float) -> str:
    text = str(value).strip() if value is not None else ''
    try:
        number = float(text)
    except ValueError:
        raise InvalidArgumentError(f"{field} must be a decimal number")
    if not -limit <= number <= limit:
        raise InvalidArgumentError(f"{field} is out of range")
    return text


def _normalize_layouts(layouts) -> List[Dict]:
    """Validate owner supplied layouts and fill in slot defaults.

    A row lists its slots explicitly or gives a slot_count, in which case
    slots are generated as {prefix}1..{prefix}N, all available.
    """
    if layouts is None:
        return []
    if not isinstance(layouts, list):
        raise InvalidArgumentError("layouts must be a list")

    normalized = []
    for layout in layouts:
        if not isinstance(layout, dict):
            raise InvalidArgumentError("Each layout must be an object")
        name = _require_text(layout.get('name'), 'Layout name')
        rows = layout.get('rows') or []
        if not isinstance(rows, list):
            raise InvalidArgumentError("Layout rows must be a list")

        normalized_rows = []
        for row in rows:
            if not isinstance(row, dict):
                raise InvalidArgumentError("Each row must be an object")
            prefix = _require_text(row.get('prefix'), 'Row prefix')
            slots = row.get('slots')
            if slots is None:
                count = _require_int(row.get('slot_count', 0), 'slot_count', 0)
                slots = [{'label': f"{prefix}{n}"} for n in range(1, count + 1)]
            if not isinstance(slots, list):
                raise InvalidArgumentError("Row slots must be a list")

            normalized_slots = []
            for number, slot in enumerate(slots, start=1):
                if not isinstance(slot, dict):
                    raise InvalidArgumentError("Each slot must be an object")
                label = slot.get('label') or slot.get('id') or f"{prefix}{number}"
                status = validate_slot_status(slot.get('status', SLOT_AVAILABLE))
                normalized_slots.append({'label': str(label), 'status': status})
            normalized_rows.append({'prefix': prefix, 'slots': normalized_slots})
        normalized.append({'name': name, 'rows': normalized_rows})
    return normalized


class ParkingBookingSystem:
    """
    Parking lot booking service with four parts:
    1. Lot Registry (lots, owners, cached availability counters)
    2. Layout/Spot Model (layouts -> rows -> slots, composite space ids)
    3. Booking Engine (validate, price, book, mark slot)
    4. Status Reconciliation (booking transitions, owner spot edits, recount)

    Every mutation runs in one SQLite transaction behind a lock, so the
    check-then-book sequence and the recount of available_spots are atomic.
    """

    def __init__(self, db_name: str = "parking_booking.db", seed_demo_data: bool = True):
        self.db_name = db_name
        self.conn = None
        self._lock = threading.RLock()
        self.connect()
        self.initialize_database()
        if seed_demo_data:
            self.seed_initial_data()

    def connect(self):
        """Open the shared database connection"""
        if self.conn is None:
            self.conn = sqlite3.connect(self.db_name, check_same_thread=False, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute('PRAGMA foreign_keys = ON')

    def close(self):
        """Close database connection"""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    @contextmanager
    def _transaction(self):
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute('BEGIN IMMEDIATE')
            try:
                yield cursor
            except Exception:
                cursor.execute('ROLLBACK')
                raise
            else:
                cursor.execute('COMMIT')
            finally:
                cursor.close()

    def _fetchall(self, query: str, params: Tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(query, params).fetchall()

    def _fetchone(self, query: str, params: Tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(query, params).fetchone()

    def initialize_database(self):
        """Create schema and indexes"""
        with self._transaction() as cursor:
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username VARCHAR(100) UNIQUE NOT NULL,
                    password_hash VARCHAR(255) NOT NULL DEFAULT '',
                    full_name VARCHAR(150) NOT NULL DEFAULT '',
                    email VARCHAR(100) UNIQUE NOT NULL,
                    phone_number VARCHAR(20),
                    role VARCHAR(10) NOT NULL DEFAULT 'user',
                    created_at TIMESTAMP NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS parking_lots (
                    lot_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name VARCHAR(150) NOT NULL,
                    address VARCHAR(255) NOT NULL,
                    latitude VARCHAR(32) NOT NULL,
                    longitude VARCHAR(32) NOT NULL,
                    total_spots INTEGER NOT NULL DEFAULT 0,
                    available_spots INTEGER NOT NULL DEFAULT 0,
                    price_per_hour INTEGER NOT NULL,
                    description TEXT,
                    opening_hour VARCHAR(5) NOT NULL,
                    closing_hour VARCHAR(5) NOT NULL,
                    owner_id INTEGER NOT NULL,
                    images TEXT NOT NULL DEFAULT '[]',
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (owner_id) REFERENCES users(user_id),
                    CHECK (available_spots >= 0 AND available_spots <= total_spots)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS parking_layouts (
                    lot_id INTEGER NOT NULL,
                    layout_index INTEGER NOT NULL,
                    name VARCHAR(100) NOT NULL,
                    PRIMARY KEY (lot_id, layout_index),
                    FOREIGN KEY (lot_id) REFERENCES parking_lots(lot_id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS layout_rows (
                    lot_id INTEGER NOT NULL,
                    layout_index INTEGER NOT NULL,
                    row_index INTEGER NOT NULL,
                    prefix VARCHAR(20) NOT NULL,
                    PRIMARY KEY (lot_id, layout_index, row_index),
                    FOREIGN KEY (lot_id, layout_index) REFERENCES parking_layouts(lot_id, layout_index)
                )
            ''')

            # Flat slot table per store; a lot's counters are recomputed by scanning it
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS parking_slots (
                    lot_id INTEGER NOT NULL,
                    layout_index INTEGER NOT NULL,
                    row_index INTEGER NOT NULL,
                    slot_index INTEGER NOT NULL,
                    slot_label VARCHAR(20) NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'available',
                    PRIMARY KEY (lot_id, layout_index, row_index, slot_index),
                    FOREIGN KEY (lot_id, layout_index, row_index)
                        REFERENCES layout_rows(lot_id, layout_index, row_index)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS bookings (
                    booking_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    lot_id INTEGER NOT NULL,
                    space_id VARCHAR(32) NOT NULL,
                    layout_index INTEGER NOT NULL,
                    row_index INTEGER NOT NULL,
                    slot_index INTEGER NOT NULL,
                    start_time TIMESTAMP NOT NULL,
                    end_time TIMESTAMP NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending',
                    total_price INTEGER NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id),
                    FOREIGN KEY (lot_id) REFERENCES parking_lots(lot_id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS reviews (
                    review_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    lot_id INTEGER NOT NULL,
                    rating INTEGER NOT NULL,
                    comment TEXT,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id),
                    FOREIGN KEY (lot_id) REFERENCES parking_lots(lot_id)
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_lots_owner ON parking_lots(owner_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_slots_status ON parking_slots(lot_id, status)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_bookings_user ON bookings(user_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_bookings_lot ON bookings(lot_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_bookings_space ON bookings(lot_id, space_id, status)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_reviews_lot ON reviews(lot_id)')
        logger.debug("Database schema ready at %s", self.db_name)

    def seed_initial_data(self):
        """Populate an empty store with demo users and lots"""
        row = self._fetchone('SELECT COUNT(*) FROM users')
        if row[0]:
            return

        owner = self.register_user('owner', generate_password_hash('password'),
                                   'Demo Owner', 'owner@example.com', '0123456789', ROLE_OWNER)
        driver = self.register_user('user', generate_password_hash('password'),
                                    'Demo Driver', 'user@example.com', '0987654321', ROLE_USER)

        def row_of(prefix: str, count: int, occupied=()) -> Dict:
            return {
                'prefix': prefix,
                'slots': [
                    {'label': f"{prefix}{n}", 'status': SLOT_OCCUPIED if n in occupied else SLOT_AVAILABLE}
                    for n in range(1, count + 1)
                ]
            }

        lot_a = self.create_parking_lot(owner['user_id'], {
            'name': 'Parking Lot A',
            'address': '123 ABC Street',
            'latitude': '10.7769',
            'longitude': '106.7009',
            'price_per_hour': 20000,
            'description': 'Open-air lot with security guard',
            'opening_hour': '06:00',
            'closing_hour': '22:00',
            'images': [],
        }, [{'name': 'Zone A', 'rows': [row_of('A', 6, (4,)), row_of('B', 5), row_of('C', 6, (1, 2, 3))]}])

        self.create_parking_lot(owner['user_id'], {
            'name': 'Parking Lot B',
            'address': '456 XYZ Street',
            'latitude': '10.7866',
            'longitude': '106.6800',
            'price_per_hour': 25000,
            'description': 'Indoor lot with security cameras',
            'opening_hour': '00:00',
            'closing_hour': '24:00',
            'images': [],
        }, [{'name': 'Main Zone', 'rows': [row_of('A', 8, range(1, 9)), row_of('B', 10, range(1, 11))]}])

        self.create_parking_lot(owner['user_id'], {
            'name': 'Parking Lot C',
            'address': '789 LMN Street',
            'latitude': '10.8231',
            'longitude': '106.6297',
            'price_per_hour': 15000,
            'description': 'Multi-storey lot with elevator',
            'opening_hour': '05:00',
            'closing_hour': '23:00',
            'images': [],
        }, [{'name': 'Zone C', 'rows': [row_of('C', 15)]}])

        self.create_review(driver['user_id'], lot_a['id'], 4, 'Clean and easy to find, friendly staff')
        logger.info("✓ Demo data seeded")

    # ===== USERS =====

    def register_user(self, username: str, password_hash: str, full_name: str, email: str,
                      phone_number: str = None, role: str = ROLE_USER) -> Dict:
        """Register a new user account"""
        username = _require_text(username, 'Username')
        email = _require_text(email, 'Email')
        if role not in ROLES:
            raise InvalidArgumentError(f"Invalid role: {role!r}")
        try:
            with self._transaction() as cursor:
                cursor.execute('''
                    INSERT INTO users (username, password_hash, full_name, email, phone_number, role, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                ''', (username, password_hash, full_name or '', email, phone_number, role, _now()))
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            logger.warning("✗ Username %s or email %s already registered", username, email)
            raise ConflictError("Username or email already registered")
        logger.info("✓ User %s registered as %s", username, role)
        return self.get_user_by_id(user_id)

    def get_user_credentials(self, username: str) -> Optional[Dict]:
        """Return login credentials for authentication"""
        row = self._fetchone('''
            SELECT user_id, username, full_name, role, password_hash
            FROM users
            WHERE username = ?
        ''', (username,))
        if not row or not row['password_hash']:
            return None
        return dict(row)

    def get_user_by_id(self, user_id: int) -> Optional[Dict]:
        row = self._fetchone('''
            SELECT user_id, username, full_name, email, phone_number, role, created_at
            FROM users WHERE user_id = ?
        ''', (user_id,))
        return dict(row) if row else None

    # ===== LOT REGISTRY =====

    @staticmethod
    def _lot_to_dict(row: sqlite3.Row) -> Dict:
        return {
            'id': row['lot_id'],
            'name': row['name'],
            'address': row['address'],
            'latitude': row['latitude'],
            'longitude': row['longitude'],
            'total_spots': row['total_spots'],
            'available_spots': row['available_spots'],
            'price_per_hour': row['price_per_hour'],
            'description': row['description'],
            'opening_hour': row['opening_hour'],
            'closing_hour': row['closing_hour'],
            'owner_id': row['owner_id'],
            'images': json.loads(row['images'] or '[]'),
            'created_at': row['created_at'],
        }

    def _normalize_lot_fields(self, fields: Dict, partial: bool = False) -> Dict:
        if not isinstance(fields, dict):
            raise InvalidArgumentError("Parking lot fields must be an object")
        values = {}
        for key in LOT_EDITABLE_FIELDS:
            if key not in fields:
                if not partial and key not in ('description', 'images'):
                    raise InvalidArgumentError(f"{key} is required")
                continue
            value = fields[key]
            if key in ('name', 'address'):
                values[key] = _require_text(value, key)
            elif key == 'latitude':
                values[key] = _coordinate(value, key, 90)
            elif key == 'longitude':
                values[key] = _coordinate(value, key, 180)
            elif key == 'price_per_hour':
                values[key] = _require_int(value, key, 0)
            elif key in ('opening_hour', 'closing_hour'):
                values[key] = validate_clock_time(value, key)
            elif key == 'images':
                images = value or []
                if not isinstance(images, list) or not all(isinstance(uri, str) for uri in images):
                    raise InvalidArgumentError("images must be a list of URIs")
                values[key] = json.dumps(images)
            else:
                if value is not None and not isinstance(value, str):
                    raise InvalidArgumentError(f"{key} must be text")
                values[key] = value
        return values

    def _require_lot(self, cursor, lot_id: int) -> sqlite3.Row:
        cursor.execute('SELECT * FROM parking_lots WHERE lot_id = ?', (lot_id,))
        row = cursor.fetchone()
        if not row:
            raise NotFoundError("Parking lot not found")
        return row

    def _require_lot_owner(self, cursor, lot_id: int, actor_id: int) -> sqlite3.Row:
        lot = self._require_lot(cursor, lot_id)
        if lot['owner_id'] != actor_id:
            logger.warning("✗ User %s is not the owner of lot %s", actor_id, lot_id)
            raise ForbiddenError("Not authorized to manage this parking lot")
        return lot

    def _insert_layouts(self, cursor, lot_id: int, layouts: List[Dict], first_index: int = 0):
        for layout_index, layout in enumerate(layouts, start=first_index):
            cursor.execute('INSERT INTO parking_layouts (lot_id, layout_index, name) VALUES (?, ?, ?)',
                           (lot_id, layout_index, layout['name']))
            for row_index, row in enumerate(layout['rows']):
                cursor.execute('''
                    INSERT INTO layout_rows (lot_id, layout_index, row_index, prefix)
                    VALUES (?, ?, ?, ?)
                ''', (lot_id, layout_index, row_index, row['prefix']))
                cursor.executemany('''
                    INSERT INTO parking_slots (lot_id, layout_index, row_index, slot_index, slot_label, status)
                    VALUES (?, ?, ?, ?, ?, ?)
                ''', [
                    (lot_id, layout_index, row_index, slot_index, slot['label'], slot['status'])
                    for slot_index, slot in enumerate(row['slots'])
                ])

    def _recompute_available_spots(self, cursor, lot_id: int) -> int:
        cursor.execute('''
            SELECT COUNT(*), SUM(CASE WHEN status = ? THEN 1 ELSE 0 END)
            FROM parking_slots
            WHERE lot_id = ?
        ''', (SLOT_AVAILABLE, lot_id))
        total, available = cursor.fetchone()
        total = total or 0
        available = available or 0
        if total:
            cursor.execute('UPDATE parking_lots SET total_spots = ?, available_spots = ? WHERE lot_id = ?',
                           (total, available, lot_id))
        else:
            cursor.execute('UPDATE parking_lots SET available_spots = 0 WHERE lot_id = ?', (lot_id,))
        return available

    def recompute_available_spots(self, lot_id: int) -> int:
        """Recount available slots of a lot and store the result on the lot"""
        with self._transaction() as cursor:
            self._require_lot(cursor, lot_id)
            return self._recompute_available_spots(cursor, lot_id)

    def create_parking_lot(self, owner_id: int, fields: Dict, layouts: List[Dict] = None) -> Dict:
        """Register a lot with its nested layouts, rows and slots"""
        values = self._normalize_lot_fields(fields)
        normalized_layouts = _normalize_layouts(layouts)
        declared_total = _require_int(fields.get('total_spots', 0), 'total_spots', 0)

        with self._transaction() as cursor:
            cursor.execute('SELECT role FROM users WHERE user_id = ?', (owner_id,))
            owner = cursor.fetchone()
            if not owner:
                raise NotFoundError("User not found")
            if owner['role'] != ROLE_OWNER:
                logger.warning("✗ User %s tried to register a lot without owner role", owner_id)
                raise ForbiddenError("Owner access required")

            cursor.execute('''
                INSERT INTO parking_lots (name, address, latitude, longitude, total_spots, available_spots,
                                          price_per_hour, description, opening_hour, closing_hour,
                                          owner_id, images, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)
            ''', (values['name'], values['address'], values['latitude'], values['longitude'],
                  declared_total, values['price_per_hour'], values.get('description'),
                  values['opening_hour'], values['closing_hour'], owner_id,
                  values.get('images', '[]'), _now()))
            lot_id = cursor.lastrowid
            self._insert_layouts(cursor, lot_id, normalized_layouts)
            self._recompute_available_spots(cursor, lot_id)

        lot = self.get_parking_lot(lot_id)
        logger.info("✓ Parking lot %s (%s) registered with %s spots", lot_id, lot['name'], lot['total_spots'])
        return lot

    def list_parking_lots(self) -> List[Dict]:
        rows = self._fetchall('SELECT * FROM parking_lots ORDER BY lot_id')
        return [self._lot_to_dict(row) for row in rows]

    def get_parking_lot(self, lot_id: int) -> Optional[Dict]:
        row = self._fetchone('SELECT * FROM parking_lots WHERE lot_id = ?', (lot_id,))
        return self._lot_to_dict(row) if row else None

    def get_parking_lots_by_owner(self, owner_id: int) -> List[Dict]:
        rows = self._fetchall('SELECT * FROM parking_lots WHERE owner_id = ? ORDER BY lot_id', (owner_id,))
        return [self._lot_to_dict(row) for row in rows]

    def update_parking_lot(self, lot_id: int, actor_id: int, updates: Dict) -> Dict:
        """Owner edit of descriptive lot fields; derived counters stay untouched"""
        values = self._normalize_lot_fields(updates, partial=True)
        with self._transaction() as cursor:
            self._require_lot_owner(cursor, lot_id, actor_id)
            if values:
                assignments = ', '.join(f"{column} = ?" for column in values)
                cursor.execute(f'UPDATE parking_lots SET {assignments} WHERE lot_id = ?',
                               (*values.values(), lot_id))
        logger.info("✓ Parking lot %s updated (%s)", lot_id, ', '.join(values) or 'no changes')
        return self.get_parking_lot(lot_id)

    # ===== LAYOUT / SPOT MODEL =====

    def _require_slot(self, cursor, lot_id: int, indices: Tuple[int, int, int]) -> sqlite3.Row:
        cursor.execute('''
            SELECT * FROM parking_slots
            WHERE lot_id = ? AND layout_index = ? AND row_index = ? AND slot_index = ?
        ''', (lot_id, *indices))
        row = cursor.fetchone()
        if not row:
            raise NotFoundError("Parking space not found")
        return row

    @staticmethod
    def _slot_to_dict(row: sqlite3.Row) -> Dict:
        return {
            'id': format_space_id(row['layout_index'], row['row_index'], row['slot_index']),
            'label': row['slot_label'],
            'status': row['status'],
        }

    def get_layouts(self, lot_id: int) -> List[Dict]:
        """Nested layouts of a lot with slots in display order"""
        if not self.get_parking_lot(lot_id):
            raise NotFoundError("Parking lot not found")
        with self._lock:
            layouts = self.conn.execute('''
                SELECT layout_index, name FROM parking_layouts
                WHERE lot_id = ? ORDER BY layout_index
            ''', (lot_id,)).fetchall()
            rows = self.conn.execute('''
                SELECT layout_index, row_index, prefix FROM layout_rows
                WHERE lot_id = ? ORDER BY layout_index, row_index
            ''', (lot_id,)).fetchall()
            slots = self.conn.execute('''
                SELECT * FROM parking_slots
                WHERE lot_id = ? ORDER BY layout_index, row_index, slot_index
            ''', (lot_id,)).fetchall()

        slots_by_row: Dict[Tuple[int, int], List[Dict]] = {}
        for slot in slots:
            slots_by_row.setdefault((slot['layout_index'], slot['row_index']), []).append(self._slot_to_dict(slot))

        rows_by_layout: Dict[int, List[Dict]] = {}
        for row in rows:
            rows_by_layout.setdefault(row['layout_index'], []).append({
                'index': row['row_index'],
                'prefix': row['prefix'],
                'slots': sort_spots(slots_by_row.get((row['layout_index'], row['row_index']), [])),
            })

        return [{
            'index': layout['layout_index'],
            'name': layout['name'],
            'rows': rows_by_layout.get(layout['layout_index'], []),
        } for layout in layouts]

    def list_spaces(self, lot_id: int) -> List[Dict]:
        """Flat list of a lot's spots grouped by zone"""
        spaces = []
        for layout in self.get_layouts(lot_id):
            for row in layout['rows']:
                zone = f"{layout['name']} / {row['prefix']}"
                for slot in row['slots']:
                    spaces.append({**slot, 'zone': zone, 'parking_lot_id': lot_id})
        return spaces

    def get_space(self, lot_id: int, space_id: str) -> Dict:
        indices = parse_space_id(space_id)
        with self._lock:
            cursor = self.conn.cursor()
            try:
                self._require_lot(cursor, lot_id)
                return self._slot_to_dict(self._require_slot(cursor, lot_id, indices))
            finally:
                cursor.close()

    def add_layout(self, lot_id: int, actor_id: int, layout: Dict) -> List[Dict]:
        """Append an owner defined layout to an existing lot"""
        normalized = _normalize_layouts([layout])
        with self._transaction() as cursor:
            self._require_lot_owner(cursor, lot_id, actor_id)
            cursor.execute('SELECT COALESCE(MAX(layout_index) + 1, 0) FROM parking_layouts WHERE lot_id = ?',
                           (lot_id,))
            next_index = cursor.fetchone()[0]
            self._insert_layouts(cursor, lot_id, normalized, first_index=next_index)
            self._recompute_available_spots(cursor, lot_id)
        logger.info("✓ Layout %s added to parking lot %s", normalized[0]['name'], lot_id)
        return self.get_layouts(lot_id)

    def update_slot_status(self, lot_id: int, space_id: str, status: str, actor_id: int) -> Dict:
        """Owner driven spot status edit followed by a recount"""
        validate_slot_status(status)
        indices = parse_space_id(space_id)
        with self._transaction() as cursor:
            self._require_lot_owner(cursor, lot_id, actor_id)
            self._require_slot(cursor, lot_id, indices)
            cursor.execute('''
                UPDATE parking_slots SET status = ?
                WHERE lot_id = ? AND layout_index = ? AND row_index = ? AND slot_index = ?
            ''', (status, lot_id, *indices))
            available = self._recompute_available_spots(cursor, lot_id)
            slot = self._slot_to_dict(self._require_slot(cursor, lot_id, indices))
        logger.info("✓ Spot %s of lot %s marked %s (%s available)", space_id, lot_id, status, available)
        return slot

    def get_availability_summary(self, lot_id: int, actor_id: int) -> Dict:
        """Spot and booking statistics for the lot owner"""
        with self._lock:
            cursor = self.conn.cursor()
            try:
                lot = self._require_lot_owner(cursor, lot_id, actor_id)
                cursor.execute('''
                    SELECT l.layout_index, l.name,
                           COUNT(s.slot_index) AS total,
                           SUM(CASE WHEN s.status = 'available' THEN 1 ELSE 0 END) AS available,
                           SUM(CASE WHEN s.status = 'occupied' THEN 1 ELSE 0 END) AS occupied,
                           SUM(CASE WHEN s.status = 'reserved' THEN 1 ELSE 0 END) AS reserved
                    FROM parking_layouts l
                    LEFT JOIN parking_slots s
                        ON s.lot_id = l.lot_id AND s.layout_index = l.layout_index
                    WHERE l.lot_id = ?
                    GROUP BY l.layout_index, l.name
                    ORDER BY l.layout_index
                ''', (lot_id,))
                by_layout_rows = cursor.fetchall()
                cursor.execute('''
                    SELECT status, COUNT(*) AS count, SUM(total_price) AS amount
                    FROM bookings
                    WHERE lot_id = ?
                    GROUP BY status
                ''', (lot_id,))
                booking_rows = cursor.fetchall()
            finally:
                cursor.close()

        by_layout = []
        counts = {status: 0 for status in SLOT_STATUSES}
        for row in by_layout_rows:
            entry = {
                'layout_index': row['layout_index'],
                'name': row['name'],
                'total': row['total'] or 0,
                SLOT_AVAILABLE: row['available'] or 0,
                SLOT_OCCUPIED: row['occupied'] or 0,
                SLOT_RESERVED: row['reserved'] or 0,
            }
            for status in SLOT_STATUSES:
                counts[status] += entry[status]
            by_layout.append(entry)

        bookings_by_status = {status: 0 for status in BOOKING_STATUSES}
        revenue = 0
        for row in booking_rows:
            bookings_by_status[row['status']] = row['count']
            if row['status'] != BOOKING_CANCELLED:
                revenue += row['amount'] or 0

        total = lot['total_spots']
        available = lot['available_spots']
        return {
            'lot_id': lot_id,
            'total_spots': total,
            'available_spots': available,
            'occupied_spots': counts[SLOT_OCCUPIED],
            'reserved_spots': counts[SLOT_RESERVED],
            'occupancy_rate': round(((total - available) / total * 100) if total else 0, 2),
            'by_layout': by_layout,
            'bookings_by_status': bookings_by_status,
            'revenue': revenue,
        }

    # ===== BOOKING ENGINE =====

    @staticmethod
    def _booking_to_dict(row: sqlite3.Row) -> Dict:
        booking = {
            'id': row['booking_id'],
            'user_id': row['user_id'],
            'parking_lot_id': row['lot_id'],
            'parking_space_id': row['space_id'],
            'start_time': row['start_time'],
            'end_time': row['end_time'],
            'status': row['status'],
            'total_price': row['total_price'],
            'created_at': row['created_at'],
        }
        keys = row.keys()
        if 'lot_name' in keys:
            booking['parking_lot_name'] = row['lot_name']
        if 'slot_label' in keys:
            booking['spot_label'] = row['slot_label']
        return booking

    def create_booking(self, user_id: int, parking_lot_id: int, parking_space_id: str,
                       start_time, end_time, total_price: int) -> Dict:
        """Reserve an available spot for [start_time, end_time).

        The spot flips to occupied and the lot's available_spots is
        recounted in the same transaction; any failure leaves no trace.
        """
        start = parse_timestamp(start_time)
        end = parse_timestamp(end_time)
        if end <= start:
            raise InvalidArgumentError("end_time must be after start_time")
        _require_int(total_price, 'total_price', 0)
        indices = parse_space_id(parking_space_id)
        space_id = format_space_id(*indices)

        with self._transaction() as cursor:
            cursor.execute('SELECT 1 FROM users WHERE user_id = ?', (user_id,))
            if not cursor.fetchone():
                raise NotFoundError("User not found")
            self._require_lot(cursor, parking_lot_id)
            slot = self._require_slot(cursor, parking_lot_id, indices)
            if slot['status'] != SLOT_AVAILABLE:
                logger.warning("✗ Spot %s of lot %s is %s", space_id, parking_lot_id, slot['status'])
                raise ConflictError("Parking spot is not available")

            cursor.execute(f'''
                SELECT booking_id, start_time, end_time FROM bookings
                WHERE lot_id = ? AND space_id = ?
                  AND status IN ({', '.join('?' for _ in ACTIVE_BOOKING_STATUSES)})
            ''', (parking_lot_id, space_id, *ACTIVE_BOOKING_STATUSES))
            for other in cursor.fetchall():
                if intervals_overlap(start, end, parse_timestamp(other['start_time']),
                                     parse_timestamp(other['end_time'])):
                    logger.warning("✗ Spot %s of lot %s already booked by booking %s",
                                   space_id, parking_lot_id, other['booking_id'])
                    raise ConflictError("Parking spot is already booked for this time")

            cursor.execute('''
                INSERT INTO bookings (user_id, lot_id, space_id, layout_index, row_index, slot_index,
                                      start_time, end_time, status, total_price, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (user_id, parking_lot_id, space_id, *indices, start.isoformat(), end.isoformat(),
                  BOOKING_PENDING, total_price, _now()))
            booking_id = cursor.lastrowid

            cursor.execute('''
                UPDATE parking_slots SET status = ?
                WHERE lot_id = ? AND layout_index = ? AND row_index = ? AND slot_index = ?
            ''', (BOOKED_SLOT_STATUS, parking_lot_id, *indices))
            available = self._recompute_available_spots(cursor, parking_lot_id)

        logger.info("✓ Booking %s created for spot %s of lot %s (price %s, %s spots left)",
                    booking_id, space_id, parking_lot_id, total_price, available)
        return self.get_booking(booking_id)

    def _release_slot(self, cursor, booking: sqlite3.Row) -> bool:
        """Hand a booking's spot back unless another active booking holds it"""
        cursor.execute(f'''
            SELECT 1 FROM bookings
            WHERE lot_id = ? AND space_id = ? AND booking_id != ?
              AND status IN ({', '.join('?' for _ in ACTIVE_BOOKING_STATUSES)})
        ''', (booking['lot_id'], booking['space_id'], booking['booking_id'], *ACTIVE_BOOKING_STATUSES))
        if cursor.fetchone():
            return False
        cursor.execute('''
            UPDATE parking_slots SET status = ?
            WHERE lot_id = ? AND layout_index = ? AND row_index = ? AND slot_index = ?
        ''', (SLOT_AVAILABLE, booking['lot_id'], booking['layout_index'],
              booking['row_index'], booking['slot_index']))
        return cursor.rowcount > 0

    def update_booking_status(self, booking_id: int, status: str, actor_id: int) -> Dict:
        """Move a booking through pending -> confirmed -> completed, or cancel it"""
        validate_booking_status(status)
        with self._transaction() as cursor:
            cursor.execute('''
                SELECT b.*, l.owner_id
                FROM bookings b
                JOIN parking_lots l ON b.lot_id = l.lot_id
                WHERE b.booking_id = ?
            ''', (booking_id,))
            booking = cursor.fetchone()
            if not booking:
                raise NotFoundError("Booking not found")

            try:
                authorize_status_change(actor_id, booking['user_id'], booking['owner_id'], status)
            except ForbiddenError:
                logger.warning("✗ User %s may not set booking %s to %s", actor_id, booking_id, status)
                raise

            if not can_transition(booking['status'], status):
                logger.warning("✗ Booking %s cannot move from %s to %s", booking_id, booking['status'], status)
                raise ConflictError(f"Cannot change booking from {booking['status']} to {status}")

            cursor.execute('UPDATE bookings SET status = ? WHERE booking_id = ?', (status, booking_id))
            if status in RELEASING_BOOKING_STATUSES:
                self._release_slot(cursor, booking)
                self._recompute_available_spots(cursor, booking['lot_id'])

        logger.info("✓ Booking %s moved from %s to %s by user %s", booking_id, booking['status'], status, actor_id)
        return self.get_booking(booking_id)

    def cancel_booking(self, booking_id: int, actor_id: int) -> Dict:
        return self.update_booking_status(booking_id, BOOKING_CANCELLED, actor_id)

    _BOOKING_SELECT = '''
        SELECT b.*, l.name AS lot_name, s.slot_label
        FROM bookings b
        JOIN parking_lots l ON b.lot_id = l.lot_id
        LEFT JOIN parking_slots s
            ON s.lot_id = b.lot_id AND s.layout_index = b.layout_index
           AND s.row_index = b.row_index AND s.slot_index = b.slot_index
    '''

    def get_booking(self, booking_id: int) -> Optional[Dict]:
        row = self._fetchone(self._BOOKING_SELECT + ' WHERE b.booking_id = ?', (booking_id,))
        return self._booking_to_dict(row) if row else None

    def get_bookings(self, user_id: int = None, parking_lot_id: int = None, status: str = None) -> List[Dict]:
        query = self._BOOKING_SELECT + ' WHERE 1 = 1'
        params = []
        if user_id is not None:
            query += ' AND b.user_id = ?'
            params.append(user_id)
        if parking_lot_id is not None:
            query += ' AND b.lot_id = ?'
            params.append(parking_lot_id)
        if status is not None:
            query += ' AND b.status = ?'
            params.append(validate_booking_status(status))
        query += ' ORDER BY b.start_time DESC, b.booking_id DESC'
        return [self._booking_to_dict(row) for row in self._fetchall(query, tuple(params))]

    def get_lot_bookings(self, lot_id: int, actor_id: int, status: str = None) -> List[Dict]:
        with self._lock:
            cursor = self.conn.cursor()
            try:
                self._require_lot_owner(cursor, lot_id, actor_id)
            finally:
                cursor.close()
        return self.get_bookings(parking_lot_id=lot_id, status=status)

    def can_view_booking(self, booking: Dict, actor_id: int) -> bool:
        if booking['user_id'] == actor_id:
            return True
        lot = self.get_parking_lot(booking['parking_lot_id'])
        return bool(lot) and lot['owner_id'] == actor_id

    # ===== REVIEWS =====

    def create_review(self, user_id: int, lot_id: int, rating: int, comment: str = None) -> Dict:
        _require_int(rating, 'rating', 1)
        if rating > 5:
            raise InvalidArgumentError("rating must be between 1 and 5")
        with self._transaction() as cursor:
            cursor.execute('SELECT 1 FROM users WHERE user_id = ?', (user_id,))
            if not cursor.fetchone():
                raise NotFoundError("User not found")
            self._require_lot(cursor, lot_id)
            cursor.execute('''
                INSERT INTO reviews (user_id, lot_id, rating, comment, created_at)
                VALUES (?, ?, ?, ?, ?)
            ''', (user_id, lot_id, rating, comment, _now()))
            review_id = cursor.lastrowid
        logger.info("✓ Review %s added to lot %s", review_id, lot_id)
        return dict(self._fetchone('''
            SELECT review_id AS id, user_id, lot_id AS parking_lot_id, rating, comment, created_at
            FROM reviews WHERE review_id = ?
        ''', (review_id,)))

    def get_reviews(self, lot_id: int) -> List[Dict]:
        if not self.get_parking_lot(lot_id):
            raise NotFoundError("Parking lot not found")
        rows = self._fetchall('''
            SELECT review_id AS id, user_id, lot_id AS parking_lot_id, rating, comment, created_at
            FROM reviews WHERE lot_id = ?
            ORDER BY review_id DESC
        ''', (lot_id,))
        return [dict(row) for row in rows]
