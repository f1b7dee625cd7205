"""
Booking Engine Tests

Exercises ParkingBookingSystem against an in-memory SQLite store.
"""

import threading
import unittest
from datetime import datetime, timedelta, timezone

from parking_errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from parking_system import ParkingBookingSystem

START = '2025-08-17T13:00:00'
END = '2025-08-17T16:00:00'


def lot_fields(**overrides):
    fields = {
        'name': 'Test Lot',
        'address': '1 Test Street',
        'latitude': '10.7769',
        'longitude': '106.7009',
        'price_per_hour': 20000,
        'opening_hour': '06:00',
        'closing_hour': '22:00',
    }
    fields.update(overrides)
    return fields


class BookingSystemTestCase(unittest.TestCase):
    """Lot with 10 slots, two of them occupied at registration"""

    def setUp(self):
        self.system = ParkingBookingSystem(':memory:', seed_demo_data=False)
        self.owner = self.system.register_user('owner', 'hash', 'Lot Owner', 'owner@example.com', role='owner')
        self.driver = self.system.register_user('driver', 'hash', 'Driver', 'driver@example.com')
        self.stranger = self.system.register_user('stranger', 'hash', 'Stranger', 'stranger@example.com')
        self.lot = self.system.create_parking_lot(self.owner['user_id'], lot_fields(), [{
            'name': 'Zone A',
            'rows': [
                {'prefix': 'A', 'slots': [
                    {'label': 'A1', 'status': 'occupied'},
                    {'label': 'A2', 'status': 'occupied'},
                    {'label': 'A3'},
                    {'label': 'A4'},
                    {'label': 'A5'},
                ]},
                {'prefix': 'B', 'slot_count': 5},
            ]
        }])
        self.lot_id = self.lot['id']

    def tearDown(self):
        self.system.close()

    def available_spots(self):
        return self.system.get_parking_lot(self.lot_id)['available_spots']

    def slot_status(self, space_id):
        return self.system.get_space(self.lot_id, space_id)['status']

    def assertAggregateConsistent(self):
        for lot in self.system.list_parking_lots():
            spaces = self.system.list_spaces(lot['id'])
            if not spaces:
                continue
            counted = sum(1 for space in spaces if space['status'] == 'available')
            self.assertEqual(lot['available_spots'], counted)
            self.assertEqual(lot['total_spots'], len(spaces))

    def book(self, space_id='0_0_2', start=START, end=END, user=None, price=60000):
        user = user or self.driver
        return self.system.create_booking(user['user_id'], self.lot_id, space_id, start, end, price)


class TestLotRegistry(BookingSystemTestCase):

    def test_initial_counts(self):
        self.assertEqual(self.lot['total_spots'], 10)
        self.assertEqual(self.lot['available_spots'], 8)
        self.assertAggregateConsistent()

    def test_only_owners_register_lots(self):
        with self.assertRaises(ForbiddenError):
            self.system.create_parking_lot(self.driver['user_id'], lot_fields(), [])
        with self.assertRaises(NotFoundError):
            self.system.create_parking_lot(999, lot_fields(), [])
        self.assertEqual(len(self.system.list_parking_lots()), 1)

    def test_invalid_lot_fields(self):
        cases = [
            lot_fields(name=''),
            lot_fields(latitude='north'),
            lot_fields(longitude='190'),
            lot_fields(price_per_hour=-1),
            lot_fields(opening_hour='6am'),
            lot_fields(images='not-a-list'),
        ]
        for fields in cases:
            with self.subTest(fields=fields):
                with self.assertRaises(InvalidArgumentError):
                    self.system.create_parking_lot(self.owner['user_id'], fields, [])

    def test_invalid_layouts_write_nothing(self):
        with self.assertRaises(InvalidArgumentError):
            self.system.create_parking_lot(self.owner['user_id'], lot_fields(name='Broken'), [
                {'name': 'Zone', 'rows': [{'prefix': 'A', 'slots': [{'label': 'A1', 'status': 'broken'}]}]}
            ])
        self.assertEqual([lot['name'] for lot in self.system.list_parking_lots()], ['Test Lot'])

    def test_lot_without_layouts(self):
        lot = self.system.create_parking_lot(self.owner['user_id'], lot_fields(total_spots=20), [])
        self.assertEqual(lot['total_spots'], 20)
        self.assertEqual(lot['available_spots'], 0)
        self.assertEqual(self.system.get_layouts(lot['id']), [])

    def test_add_layout_recounts(self):
        layouts = self.system.add_layout(self.lot_id, self.owner['user_id'],
                                         {'name': 'Zone B', 'rows': [{'prefix': 'C', 'slot_count': 3}]})
        self.assertEqual([layout['name'] for layout in layouts], ['Zone A', 'Zone B'])
        self.assertEqual(layouts[1]['rows'][0]['slots'][2]['id'], '1_0_2')
        lot = self.system.get_parking_lot(self.lot_id)
        self.assertEqual(lot['total_spots'], 13)
        self.assertEqual(lot['available_spots'], 11)

        with self.assertRaises(ForbiddenError):
            self.system.add_layout(self.lot_id, self.driver['user_id'], {'name': 'Zone X', 'rows': []})

    def test_update_parking_lot(self):
        lot = self.system.update_parking_lot(self.lot_id, self.owner['user_id'], {
            'price_per_hour': 25000,
            'description': 'Covered parking',
            'available_spots': 100,
        })
        self.assertEqual(lot['price_per_hour'], 25000)
        self.assertEqual(lot['description'], 'Covered parking')
        self.assertEqual(lot['available_spots'], 8)

        with self.assertRaises(ForbiddenError):
            self.system.update_parking_lot(self.lot_id, self.stranger['user_id'], {'name': 'Mine now'})
        with self.assertRaises(NotFoundError):
            self.system.update_parking_lot(999, self.owner['user_id'], {'name': 'Nowhere'})

    def test_lots_by_owner(self):
        self.assertEqual([lot['id'] for lot in self.system.get_parking_lots_by_owner(self.owner['user_id'])],
                         [self.lot_id])
        self.assertEqual(self.system.get_parking_lots_by_owner(self.driver['user_id']), [])

    def test_recompute_available_spots(self):
        self.assertEqual(self.system.recompute_available_spots(self.lot_id), 8)
        with self.assertRaises(NotFoundError):
            self.system.recompute_available_spots(999)


class TestLayoutModel(BookingSystemTestCase):

    def test_layout_ids_and_zones(self):
        spaces = self.system.list_spaces(self.lot_id)
        self.assertEqual(len(spaces), 10)
        self.assertEqual(spaces[0], {
            'id': '0_0_0', 'label': 'A1', 'status': 'occupied',
            'zone': 'Zone A / A', 'parking_lot_id': self.lot_id,
        })
        self.assertEqual(spaces[5]['label'], 'B1')
        self.assertEqual(spaces[5]['id'], '0_1_0')

    def test_display_order_follows_numeric_suffix(self):
        lot = self.system.create_parking_lot(self.owner['user_id'], lot_fields(name='Shuffled'), [{
            'name': 'Zone', 'rows': [{'prefix': 'A', 'slots': [{'label': 'A10'}, {'label': 'A2'}, {'label': 'A1'}]}]
        }])
        spaces = self.system.list_spaces(lot['id'])
        self.assertEqual([space['label'] for space in spaces], ['A1', 'A2', 'A10'])
        self.assertEqual([space['id'] for space in spaces], ['0_0_2', '0_0_1', '0_0_0'])

    def test_missing_lot(self):
        with self.assertRaises(NotFoundError):
            self.system.get_layouts(999)
        with self.assertRaises(NotFoundError):
            self.system.get_space(999, '0_0_0')


class TestBookingEngine(BookingSystemTestCase):

    def test_scenario_book_then_cancel(self):
        booking = self.book()
        self.assertEqual(booking['status'], 'pending')
        self.assertEqual(booking['parking_space_id'], '0_0_2')
        self.assertEqual(booking['spot_label'], 'A3')
        self.assertEqual(booking['total_price'], 60000)
        self.assertEqual(self.available_spots(), 7)
        self.assertEqual(self.slot_status('0_0_2'), 'occupied')
        self.assertAggregateConsistent()

        cancelled = self.system.update_booking_status(booking['id'], 'cancelled', self.driver['user_id'])
        self.assertEqual(cancelled['status'], 'cancelled')
        self.assertEqual(self.available_spots(), 8)
        self.assertEqual(self.slot_status('0_0_2'), 'available')
        self.assertAggregateConsistent()

    def test_booking_non_available_slot_conflicts(self):
        with self.assertRaises(ConflictError):
            self.book('0_0_0')
        self.assertEqual(self.system.get_bookings(), [])
        self.assertEqual(self.available_spots(), 8)

    def test_second_booking_on_same_slot_conflicts(self):
        self.book()
        with self.assertRaises(ConflictError):
            self.book(user=self.stranger)
        self.assertEqual(len(self.system.get_bookings(parking_lot_id=self.lot_id)), 1)
        self.assertEqual(self.available_spots(), 7)

    def test_missing_references(self):
        with self.assertRaises(NotFoundError):
            self.book('0_7_0')
        with self.assertRaises(NotFoundError):
            self.system.create_booking(self.driver['user_id'], 999, '0_0_2', START, END, 60000)
        with self.assertRaises(NotFoundError):
            self.system.create_booking(999, self.lot_id, '0_0_2', START, END, 60000)
        self.assertEqual(self.system.get_bookings(), [])

    def test_invalid_arguments_write_nothing(self):
        with self.assertRaises(InvalidArgumentError):
            self.book(start=END, end=START)
        with self.assertRaises(InvalidArgumentError):
            self.book('A3')
        with self.assertRaises(InvalidArgumentError):
            self.book(price=-5)
        self.assertEqual(self.system.get_bookings(), [])
        self.assertEqual(self.slot_status('0_0_2'), 'available')

    def test_overlapping_booking_rejected_after_manual_release(self):
        first = self.book()
        self.system.update_slot_status(self.lot_id, '0_0_2', 'available', self.owner['user_id'])

        with self.assertRaises(ConflictError):
            self.book(start='2025-08-17T15:00:00', end='2025-08-17T17:00:00', user=self.stranger)

        second = self.book(start='2025-08-17T16:00:00', end='2025-08-17T18:00:00', user=self.stranger)
        self.assertEqual(second['status'], 'pending')

        # The slot stays occupied while the second booking still holds it
        self.system.update_booking_status(first['id'], 'cancelled', self.driver['user_id'])
        self.assertEqual(self.slot_status('0_0_2'), 'occupied')
        self.assertAggregateConsistent()

    def test_malformed_and_oversized_space_ids(self):
        for space_id in ('0_0_²', '0_٣_0', '0_0_' + '9' * 25):
            with self.subTest(space_id=space_id):
                with self.assertRaises(InvalidArgumentError):
                    self.system.get_space(self.lot_id, space_id)
                with self.assertRaises(InvalidArgumentError):
                    self.book(space_id)
                with self.assertRaises(InvalidArgumentError):
                    self.system.update_slot_status(self.lot_id, space_id, 'reserved', self.owner['user_id'])
        self.assertEqual(self.system.get_bookings(), [])

    def test_oversized_price_rejected(self):
        with self.assertRaises(InvalidArgumentError):
            self.book(price=10 ** 20)
        self.assertEqual(self.available_spots(), 8)

    def test_concurrent_bookings_on_one_slot(self):
        outcomes = []
        lock = threading.Lock()

        def attempt():
            try:
                self.book()
                result = 'booked'
            except ConflictError:
                result = 'conflict'
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count('booked'), 1)
        self.assertEqual(outcomes.count('conflict'), 9)
        self.assertEqual(len(self.system.get_bookings(parking_lot_id=self.lot_id)), 1)
        self.assertEqual(self.available_spots(), 7)
        self.assertAggregateConsistent()

    def test_created_at_is_utc(self):
        booking = self.book()
        created_at = datetime.fromisoformat(booking['created_at'])
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        self.assertLess(abs(now - created_at), timedelta(minutes=5))

    def test_user_and_lot_booking_queries(self):
        booking = self.book()
        self.assertEqual([b['id'] for b in self.system.get_bookings(user_id=self.driver['user_id'])],
                         [booking['id']])
        self.assertEqual(self.system.get_bookings(user_id=self.stranger['user_id']), [])
        self.assertEqual(len(self.system.get_lot_bookings(self.lot_id, self.owner['user_id'], 'pending')), 1)
        self.assertEqual(self.system.get_lot_bookings(self.lot_id, self.owner['user_id'], 'confirmed'), [])
        with self.assertRaises(ForbiddenError):
            self.system.get_lot_bookings(self.lot_id, self.driver['user_id'])
        with self.assertRaises(InvalidArgumentError):
            self.system.get_bookings(status='archived')


class TestBookingStatusTransitions(BookingSystemTestCase):

    def setUp(self):
        super().setUp()
        self.booking = self.book()

    def test_owner_confirms_and_completes(self):
        owner_id = self.owner['user_id']
        confirmed = self.system.update_booking_status(self.booking['id'], 'confirmed', owner_id)
        self.assertEqual(confirmed['status'], 'confirmed')
        self.assertEqual(self.available_spots(), 7)

        completed = self.system.update_booking_status(self.booking['id'], 'completed', owner_id)
        self.assertEqual(completed['status'], 'completed')
        self.assertEqual(self.slot_status('0_0_2'), 'available')
        self.assertEqual(self.available_spots(), 8)

    def test_confirmed_booking_can_be_cancelled(self):
        self.system.update_booking_status(self.booking['id'], 'confirmed', self.owner['user_id'])
        self.system.cancel_booking(self.booking['id'], self.driver['user_id'])
        self.assertEqual(self.system.get_booking(self.booking['id'])['status'], 'cancelled')
        self.assertEqual(self.available_spots(), 8)

    def test_terminal_states_reject_transitions(self):
        owner_id = self.owner['user_id']
        self.system.update_booking_status(self.booking['id'], 'cancelled', owner_id)
        for status in ('pending', 'confirmed', 'completed', 'cancelled'):
            with self.subTest(status=status):
                with self.assertRaises(ConflictError):
                    self.system.update_booking_status(self.booking['id'], status, owner_id)
        self.assertEqual(self.system.get_booking(self.booking['id'])['status'], 'cancelled')
        self.assertEqual(self.available_spots(), 8)

        other = self.book('0_0_3')
        self.system.update_booking_status(other['id'], 'confirmed', owner_id)
        self.system.update_booking_status(other['id'], 'completed', owner_id)
        with self.assertRaises(ConflictError):
            self.system.update_booking_status(other['id'], 'cancelled', owner_id)

    def test_pending_cannot_skip_to_completed(self):
        with self.assertRaises(ConflictError):
            self.system.update_booking_status(self.booking['id'], 'completed', self.owner['user_id'])

    def test_stranger_is_forbidden_and_nothing_changes(self):
        for status in ('confirmed', 'cancelled', 'completed'):
            with self.subTest(status=status):
                with self.assertRaises(ForbiddenError):
                    self.system.update_booking_status(self.booking['id'], status, self.stranger['user_id'])
        self.assertEqual(self.system.get_booking(self.booking['id'])['status'], 'pending')
        self.assertEqual(self.available_spots(), 7)

    def test_booking_user_can_only_cancel(self):
        with self.assertRaises(ForbiddenError):
            self.system.update_booking_status(self.booking['id'], 'confirmed', self.driver['user_id'])
        self.assertEqual(self.system.get_booking(self.booking['id'])['status'], 'pending')

    def test_owner_booking_own_lot_may_only_cancel(self):
        own = self.book('0_0_3', user=self.owner)
        with self.assertRaises(ForbiddenError):
            self.system.update_booking_status(own['id'], 'confirmed', self.owner['user_id'])
        self.assertEqual(self.system.get_booking(own['id'])['status'], 'pending')

        cancelled = self.system.update_booking_status(own['id'], 'cancelled', self.owner['user_id'])
        self.assertEqual(cancelled['status'], 'cancelled')
        self.assertEqual(self.slot_status('0_0_3'), 'available')

    def test_invalid_status_and_missing_booking(self):
        with self.assertRaises(InvalidArgumentError):
            self.system.update_booking_status(self.booking['id'], 'archived', self.owner['user_id'])
        with self.assertRaises(NotFoundError):
            self.system.update_booking_status(999, 'cancelled', self.owner['user_id'])


class TestOwnerSpotStatus(BookingSystemTestCase):

    def test_owner_updates_spot(self):
        slot = self.system.update_slot_status(self.lot_id, '0_1_4', 'reserved', self.owner['user_id'])
        self.assertEqual(slot, {'id': '0_1_4', 'label': 'B5', 'status': 'reserved'})
        self.assertEqual(self.available_spots(), 7)

        self.system.update_slot_status(self.lot_id, '0_0_0', 'available', self.owner['user_id'])
        self.assertEqual(self.available_spots(), 8)
        self.assertAggregateConsistent()

    def test_rejections(self):
        with self.assertRaises(ForbiddenError):
            self.system.update_slot_status(self.lot_id, '0_1_4', 'reserved', self.driver['user_id'])
        with self.assertRaises(InvalidArgumentError):
            self.system.update_slot_status(self.lot_id, '0_1_4', 'closed', self.owner['user_id'])
        with self.assertRaises(NotFoundError):
            self.system.update_slot_status(self.lot_id, '3_0_0', 'reserved', self.owner['user_id'])
        self.assertEqual(self.available_spots(), 8)

    def test_availability_summary(self):
        booking = self.book()
        self.system.update_booking_status(booking['id'], 'confirmed', self.owner['user_id'])
        cancelled = self.book('0_0_3')
        self.system.cancel_booking(cancelled['id'], self.driver['user_id'])
        self.system.update_slot_status(self.lot_id, '0_1_0', 'reserved', self.owner['user_id'])

        summary = self.system.get_availability_summary(self.lot_id, self.owner['user_id'])
        self.assertEqual(summary['total_spots'], 10)
        self.assertEqual(summary['available_spots'], 6)
        self.assertEqual(summary['occupied_spots'], 3)
        self.assertEqual(summary['reserved_spots'], 1)
        self.assertEqual(summary['occupancy_rate'], 40.0)
        self.assertEqual(summary['by_layout'][0]['available'], 6)
        self.assertEqual(summary['bookings_by_status']['confirmed'], 1)
        self.assertEqual(summary['bookings_by_status']['cancelled'], 1)
        self.assertEqual(summary['revenue'], 60000)

        with self.assertRaises(ForbiddenError):
            self.system.get_availability_summary(self.lot_id, self.driver['user_id'])


class TestUsersAndReviews(BookingSystemTestCase):

    def test_duplicate_user(self):
        with self.assertRaises(ConflictError):
            self.system.register_user('driver', 'hash', 'Again', 'other@example.com')
        with self.assertRaises(ConflictError):
            self.system.register_user('other', 'hash', 'Again', 'driver@example.com')
        with self.assertRaises(InvalidArgumentError):
            self.system.register_user('admin', 'hash', 'Admin', 'admin@example.com', role='admin')

    def test_credentials(self):
        credentials = self.system.get_user_credentials('driver')
        self.assertEqual(credentials['user_id'], self.driver['user_id'])
        self.assertEqual(credentials['password_hash'], 'hash')
        self.assertIsNone(self.system.get_user_credentials('nobody'))
        self.assertNotIn('password_hash', self.system.get_user_by_id(self.driver['user_id']))

    def test_reviews(self):
        review = self.system.create_review(self.driver['user_id'], self.lot_id, 4, 'Easy to find')
        self.assertEqual(review['rating'], 4)
        self.assertEqual(review['parking_lot_id'], self.lot_id)
        self.assertEqual([r['id'] for r in self.system.get_reviews(self.lot_id)], [review['id']])

        with self.assertRaises(InvalidArgumentError):
            self.system.create_review(self.driver['user_id'], self.lot_id, 6)
        with self.assertRaises(NotFoundError):
            self.system.create_review(self.driver['user_id'], 999, 3)
        with self.assertRaises(NotFoundError):
            self.system.get_reviews(999)


class TestDemoData(unittest.TestCase):

    def test_seeded_store_is_consistent(self):
        system = ParkingBookingSystem(':memory:')
        try:
            lots = system.list_parking_lots()
            self.assertEqual(len(lots), 3)
            self.assertEqual([lot['available_spots'] for lot in lots], [13, 0, 15])
            for lot in lots:
                spaces = system.list_spaces(lot['id'])
                self.assertEqual(lot['total_spots'], len(spaces))
                self.assertEqual(lot['available_spots'],
                                 sum(1 for space in spaces if space['status'] == 'available'))
            self.assertIsNotNone(system.get_user_credentials('owner'))

            system.seed_initial_data()
            self.assertEqual(len(system.list_parking_lots()), 3)
        finally:
            system.close()


if __name__ == '__main__':
    unittest.main()
