import logging
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest import mock

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from toy_rental.db.base import Base
from toy_rental.models.rental_models import Rental, RentalItem, Toy, User
from toy_rental.schemas.rentals import CreateRentalItemDto, ReturnRentalItemDto
from toy_rental.services.errors import (
    InsufficientStock,
    InvalidCondition,
    InvalidRentalRequest,
    InvalidRentalState,
    InvalidReturnDate,
    PersistenceFailure,
    RentalNotFound,
    ToyNotFound,
    UnknownRentalItem,
)
from toy_rental.services.rental_service import RentalService, serialize_rental
from toy_rental.services.stores import RentalStore, ToyStore

RENTAL_DATE = datetime(2025, 5, 1, 9, 0, 0)
EXPECTED_RETURN = datetime(2025, 5, 8, 9, 0, 0)


class RentalServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)()
        self.user = User(
            email="parent@example.com",
            password_hash="x",
            password_salt="y",
            full_name="Parent",
        )
        self.db.add(self.user)
        self.blocks = self._add_toy("Wooden Blocks", rental_price="15000", late_fee="1000", replacement="100000", stock=10)
        self.train = self._add_toy("Train Set", rental_price="25000.50", late_fee="2500", replacement="400000", stock=2)
        self.db.commit()
        self.service = RentalService(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _add_toy(self, name, rental_price, late_fee, replacement, stock):
        toy = Toy(
            name=name,
            condition="new",
            rental_price=Decimal(rental_price),
            late_fee_per_day=Decimal(late_fee),
            replacement_price=Decimal(replacement),
            stock=stock,
        )
        self.db.add(toy)
        self.db.flush()
        return toy

    def _stock(self, toy):
        return self.db.execute(select(Toy.stock).where(Toy.id == toy.id)).scalar_one()

    def _count(self, model):
        return self.db.execute(select(func.count()).select_from(model)).scalar_one()

    def _create(self, *lines, rental_date=RENTAL_DATE, expected=EXPECTED_RETURN, notes=None):
        items = [
            CreateRentalItemDto(toy_id=toy.id, quantity=quantity, condition_before=condition)
            for toy, quantity, condition in lines
        ]
        return self.service.create_rental(self.user.id, rental_date, expected, items, notes)

    def _report(self, item, condition, description=None):
        return ReturnRentalItemDto(rental_item_id=item.id, condition_after=condition, damage_description=description)


class CreateRentalTests(RentalServiceTestCase):
    def test_creates_pending_rental_with_price_snapshot(self):
        rental = self._create((self.blocks, 3, "new"), (self.train, 1, "good"), notes="birthday")

        self.assertEqual(rental.status, "pending")
        self.assertEqual(rental.payment_status, "unpaid")
        self.assertEqual(rental.total_rental_price, Decimal("70000.50"))
        self.assertEqual(rental.late_fee, Decimal("0"))
        self.assertEqual(rental.damage_fee, Decimal("0"))
        self.assertIsNone(rental.actual_return_date)
        self.assertEqual(rental.notes, "birthday")

        first, second = rental.rental_items
        self.assertEqual(first.toy_id, self.blocks.id)
        self.assertEqual(first.price_per_unit, Decimal("15000.00"))
        self.assertEqual(first.condition_after, "new")
        self.assertEqual(first.status, "rented")
        self.assertEqual(second.toy_id, self.train.id)
        self.assertEqual(second.condition_after, "good")

        self.assertEqual(self._stock(self.blocks), 7)
        self.assertEqual(self._stock(self.train), 1)

    def test_price_snapshot_survives_catalog_change(self):
        rental = self._create((self.blocks, 1, "new"))
        self.db.execute(update(Toy).where(Toy.id == self.blocks.id).values(rental_price=Decimal("99999")))
        self.db.commit()

        reloaded = self.service.get_rental(rental.id)
        self.assertEqual(reloaded.rental_items[0].price_per_unit, Decimal("15000.00"))
        self.assertEqual(reloaded.total_rental_price, Decimal("15000.00"))

    def test_insufficient_stock_has_no_side_effects(self):
        with self.assertRaises(InsufficientStock) as ctx:
            self._create((self.blocks, 2, "new"), (self.train, 3, "new"))

        self.assertIn("Train Set", str(ctx.exception))
        self.assertEqual(self._stock(self.blocks), 10)
        self.assertEqual(self._stock(self.train), 2)
        self.assertEqual(self._count(Rental), 0)
        self.assertEqual(self._count(RentalItem), 0)

    def test_repeated_lines_for_one_toy_share_its_stock(self):
        with self.assertRaises(InsufficientStock):
            self._create((self.train, 1, "new"), (self.train, 2, "new"))
        self.assertEqual(self._stock(self.train), 2)

    def test_unknown_toy_has_no_side_effects(self):
        missing = Toy(id=uuid.uuid4(), name="Ghost")
        with self.assertRaises(ToyNotFound):
            self._create((self.blocks, 1, "new"), (missing, 1, "new"))
        self.assertEqual(self._stock(self.blocks), 10)
        self.assertEqual(self._count(Rental), 0)

    def test_dates_are_checked_before_any_store_call(self):
        toys = mock.Mock(spec=ToyStore)
        rentals = mock.Mock(spec=RentalStore)
        service = RentalService(self.db, toys=toys, rentals=rentals)
        items = [CreateRentalItemDto(toy_id=self.blocks.id, quantity=1, condition_before="new")]

        for expected in (RENTAL_DATE, RENTAL_DATE - timedelta(hours=1)):
            with self.assertRaises(InvalidReturnDate):
                service.create_rental(self.user.id, RENTAL_DATE, expected, items)

        toys.find_by_id.assert_not_called()
        rentals.insert_with_items.assert_not_called()

    def test_rejects_empty_items_and_bad_lines(self):
        with self.assertRaises(InvalidRentalRequest):
            self.service.create_rental(self.user.id, RENTAL_DATE, EXPECTED_RETURN, [])
        with self.assertRaises(InvalidRentalRequest):
            self._create((self.blocks, 0, "new"))
        with self.assertRaises(InvalidCondition):
            self._create((self.blocks, 1, "damaged"))
        self.assertEqual(self._stock(self.blocks), 10)

    def test_concurrent_checkout_cannot_oversell(self):
        class RacingToyStore(ToyStore):
            def find_by_id(self, toy_id):
                toy = super().find_by_id(toy_id)
                # Another checkout empties the shelf after our read.
                self.db.execute(
                    update(Toy)
                    .where(Toy.id == toy.id)
                    .values(stock=0)
                    .execution_options(synchronize_session=False)
                )
                return toy

        service = RentalService(self.db, toys=RacingToyStore(self.db))
        items = [CreateRentalItemDto(toy_id=self.train.id, quantity=2, condition_before="new")]
        with self.assertRaises(InsufficientStock):
            service.create_rental(self.user.id, RENTAL_DATE, EXPECTED_RETURN, items)
        self.assertEqual(self._count(Rental), 0)
        self.assertEqual(self._count(RentalItem), 0)

    def test_aware_datetimes_are_stored_as_utc(self):
        plus_seven = timezone(timedelta(hours=7))
        rental = self._create(
            (self.blocks, 1, "new"),
            rental_date=datetime(2025, 5, 1, 16, 0, tzinfo=plus_seven),
            expected=datetime(2025, 5, 3, 16, 0, tzinfo=plus_seven),
        )
        self.assertEqual(rental.rental_date, datetime(2025, 5, 1, 9, 0))
        self.assertEqual(rental.expected_return_date, datetime(2025, 5, 3, 9, 0))


class ReturnRentalTests(RentalServiceTestCase):
    def test_on_time_return_settles_damage_and_restocks(self):
        rental = self._create((self.blocks, 3, "new"), (self.train, 1, "excellent"))
        blocks_item, train_item = rental.rental_items

        returned = self.service.return_rental(
            rental.id,
            EXPECTED_RETURN - timedelta(hours=2),
            [self._report(blocks_item, "good"), self._report(train_item, "lost")],
            notes="returned at desk",
        )

        self.assertEqual(returned.status, "completed")
        self.assertEqual(returned.late_fee, Decimal("0.00"))
        # blocks: 100000 * 0.15 * 2 steps * 3 units, train: full replacement
        self.assertEqual(blocks_item.damage_fee, Decimal("90000.00"))
        self.assertEqual(train_item.damage_fee, Decimal("400000.00"))
        self.assertEqual(returned.damage_fee, Decimal("490000.00"))
        self.assertEqual(blocks_item.status, "returned")
        self.assertEqual(train_item.status, "lost")
        self.assertEqual(returned.actual_return_date, EXPECTED_RETURN - timedelta(hours=2))
        self.assertEqual(returned.notes, "returned at desk")

        self.assertEqual(self._stock(self.blocks), 10)
        self.assertEqual(self._stock(self.train), 1)

    def test_late_return_charges_every_line(self):
        rental = self._create((self.blocks, 2, "new"), (self.train, 1, "new"))
        blocks_item, train_item = rental.rental_items

        returned = self.service.return_rental(
            rental.id,
            EXPECTED_RETURN + timedelta(hours=49),
            [self._report(blocks_item, "new"), self._report(train_item, "new")],
        )

        # two 48-hour periods: blocks 1000*2*2, train 2500*2*1
        self.assertEqual(returned.status, "overdue")
        self.assertEqual(returned.late_fee, Decimal("9000.00"))
        self.assertEqual(returned.damage_fee, Decimal("0.00"))
        self.assertEqual(self._stock(self.blocks), 10)
        self.assertEqual(self._stock(self.train), 2)

    def test_return_must_report_every_item(self):
        rental = self._create((self.blocks, 2, "new"), (self.train, 1, "new"))
        blocks_item, train_item = rental.rental_items

        with self.assertRaises(InvalidRentalRequest) as ctx:
            self.service.return_rental(rental.id, EXPECTED_RETURN, [self._report(blocks_item, "new")])

        self.assertIn(str(train_item.id), str(ctx.exception))
        reloaded = self.service.get_rental(rental.id)
        self.assertEqual(reloaded.status, "pending")
        self.assertIsNone(reloaded.actual_return_date)
        self.assertEqual([item.status for item in reloaded.rental_items], ["rented", "rented"])
        self.assertEqual(self._stock(self.blocks), 8)
        self.assertEqual(self._stock(self.train), 1)

    def test_total_amount_is_price_plus_fees(self):
        rental = self._create((self.blocks, 1, "new"), (self.train, 2, "good"))
        blocks_item, train_item = rental.rental_items

        returned = self.service.return_rental(
            rental.id,
            EXPECTED_RETURN + timedelta(hours=1),
            [
                self._report(blocks_item, "damaged", "Chewed corners on two blocks"),
                self._report(train_item, "fair"),
            ],
        )

        self.assertEqual(blocks_item.damage_fee, Decimal("70000.00"))
        self.assertEqual(blocks_item.damage_description, "Chewed corners on two blocks")
        self.assertEqual(blocks_item.status, "damaged")
        self.assertEqual(train_item.damage_fee, Decimal("120000.00"))
        self.assertEqual(
            returned.total_amount,
            returned.total_rental_price + returned.late_fee + returned.damage_fee,
        )
        self.assertEqual(serialize_rental(returned)["total_amount"], float(returned.total_amount))
        # damaged blocks do not go back to stock, the fair trains do
        self.assertEqual(self._stock(self.blocks), 9)
        self.assertEqual(self._stock(self.train), 2)

    def test_settled_rental_cannot_be_returned_again(self):
        rental = self._create((self.blocks, 1, "new"))
        item = rental.rental_items[0]
        self.service.return_rental(rental.id, EXPECTED_RETURN, [self._report(item, "new")])

        with self.assertRaises(InvalidRentalState):
            self.service.return_rental(rental.id, EXPECTED_RETURN, [self._report(item, "new")])
        self.assertEqual(self._stock(self.blocks), 10)

    def test_late_settlement_cannot_run_twice(self):
        rental = self._create((self.blocks, 1, "new"))
        item = rental.rental_items[0]
        late = EXPECTED_RETURN + timedelta(days=3)
        self.service.return_rental(rental.id, late, [self._report(item, "new")])

        with self.assertRaises(InvalidRentalState):
            self.service.return_rental(rental.id, late, [self._report(item, "new")])
        self.assertEqual(self._stock(self.blocks), 10)

    def test_cancelled_rental_cannot_be_returned(self):
        rental = self._create((self.blocks, 1, "new"))
        self.service.cancel_rental(rental.id)

        with mock.patch.object(self.service.rentals, "update_item") as update_item:
            with self.assertRaises(InvalidRentalState):
                self.service.return_rental(rental.id, EXPECTED_RETURN, [])
            update_item.assert_not_called()

    def test_return_before_rental_date_is_rejected(self):
        rental = self._create((self.blocks, 1, "new"))
        with self.assertRaises(InvalidReturnDate):
            self.service.return_rental(rental.id, RENTAL_DATE - timedelta(minutes=1), [])

    def test_missing_rental(self):
        with self.assertRaises(RentalNotFound):
            self.service.return_rental(uuid.uuid4(), EXPECTED_RETURN, [])
        with self.assertRaises(RentalNotFound):
            self.service.get_rental("not-a-uuid")

    def test_unknown_item_rolls_back_whole_settlement(self):
        rental = self._create((self.blocks, 2, "new"))
        item = rental.rental_items[0]
        reports = [
            self._report(item, "new"),
            ReturnRentalItemDto(rental_item_id=uuid.uuid4(), condition_after="new"),
        ]

        with self.assertRaises(UnknownRentalItem):
            self.service.return_rental(rental.id, EXPECTED_RETURN, reports)

        reloaded = self.service.get_rental(rental.id)
        self.assertEqual(reloaded.status, "pending")
        self.assertEqual(reloaded.rental_items[0].status, "rented")
        self.assertIsNone(reloaded.actual_return_date)
        self.assertEqual(self._stock(self.blocks), 8)

    def test_rejects_invalid_reports(self):
        rental = self._create((self.blocks, 1, "new"))
        item = rental.rental_items[0]

        with self.assertRaises(InvalidCondition):
            self.service.return_rental(rental.id, EXPECTED_RETURN, [self._report(item, "shiny")])
        with self.assertRaises(InvalidRentalRequest):
            self.service.return_rental(rental.id, EXPECTED_RETURN, [self._report(item, "damaged", "  ")])
        with self.assertRaises(InvalidRentalRequest):
            self.service.return_rental(
                rental.id,
                EXPECTED_RETURN,
                [self._report(item, "new"), self._report(item, "good")],
            )
        self.assertEqual(self.service.get_rental(rental.id).status, "pending")
        self.assertEqual(self._stock(self.blocks), 9)

    def test_store_failure_is_wrapped_and_rolled_back(self):
        class FailingRentalStore(RentalStore):
            def update_summary(self, rental, fields):
                raise OperationalError("UPDATE rentals", {}, Exception("disk I/O error"))

        service = RentalService(self.db, rentals=FailingRentalStore(self.db))
        rental = self._create((self.blocks, 1, "new"))
        item = rental.rental_items[0]

        with self.assertRaises(PersistenceFailure):
            service.return_rental(rental.id, EXPECTED_RETURN, [self._report(item, "new")])

        reloaded = self.service.get_rental(rental.id)
        self.assertEqual(reloaded.rental_items[0].status, "rented")
        self.assertEqual(self._stock(self.blocks), 9)


class RentalStockConservationTests(RentalServiceTestCase):
    def _rented_quantity(self, toy):
        return self.db.execute(
            select(func.coalesce(func.sum(RentalItem.quantity), 0)).where(
                RentalItem.toy_id == toy.id,
                RentalItem.status == "rented",
            )
        ).scalar_one()

    def _assert_conserved(self, toy, initial, lost_or_damaged=0):
        self.assertEqual(self._stock(toy), initial - self._rented_quantity(toy) - lost_or_damaged)

    def test_stock_tracks_rented_quantities(self):
        first = self._create((self.blocks, 3, "new"))
        self._assert_conserved(self.blocks, 10)
        second = self._create((self.blocks, 4, "good"))
        self._assert_conserved(self.blocks, 10)

        self.service.return_rental(first.id, EXPECTED_RETURN, [self._report(first.rental_items[0], "fair")])
        self._assert_conserved(self.blocks, 10)

        self.service.return_rental(second.id, EXPECTED_RETURN, [self._report(second.rental_items[0], "lost")])
        self._assert_conserved(self.blocks, 10, lost_or_damaged=4)

    def test_cancel_releases_stock(self):
        rental = self._create((self.blocks, 3, "new"), (self.train, 2, "new"))
        cancelled = self.service.cancel_rental(rental.id)

        self.assertEqual(cancelled.status, "cancelled")
        self.assertTrue(all(item.status == "returned" for item in cancelled.rental_items))
        self.assertEqual(self._stock(self.blocks), 10)
        self.assertEqual(self._stock(self.train), 2)
        with self.assertRaises(InvalidRentalState):
            self.service.cancel_rental(rental.id)

    def test_delete_releases_outstanding_stock(self):
        rental = self._create((self.train, 2, "new"))
        self.service.delete_rental(rental.id)
        self.assertEqual(self._stock(self.train), 2)
        self.assertEqual(self._count(RentalItem), 0)
        with self.assertRaises(RentalNotFound):
            self.service.delete_rental(rental.id)


class RentalQueryAndLoggingTests(RentalServiceTestCase):
    def test_list_rentals_filters_by_user(self):
        self._create((self.blocks, 1, "new"))
        self._create((self.blocks, 1, "new"), rental_date=RENTAL_DATE + timedelta(days=1), expected=EXPECTED_RETURN + timedelta(days=1))

        rows, total = self.service.list_rentals(limit=1, offset=0, user_id=self.user.id)
        self.assertEqual(total, 2)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].rental_date, RENTAL_DATE + timedelta(days=1))

        rows, total = self.service.list_rentals(limit=10, offset=0, user_id=uuid.uuid4())
        self.assertEqual((rows, total), ([], 0))

    def test_uses_injected_logger(self):
        logger = logging.getLogger("toy_rental.tests.rentals")
        service = RentalService(self.db, logger=logger)
        items = [CreateRentalItemDto(toy_id=self.blocks.id, quantity=1, condition_before="new")]
        with self.assertLogs(logger, level="INFO") as captured:
            service.create_rental(self.user.id, RENTAL_DATE, EXPECTED_RETURN, items)
        self.assertTrue(any("Rental created" in line for line in captured.output))


if __name__ == "__main__":
    unittest.main()
