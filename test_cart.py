import dataclasses
import random
import unittest
from decimal import ROUND_HALF_EVEN, Decimal

import money
from cart import Cart, CartSnapshot, LineItem, Product, line_ref, snapshot_from_lines


class FakeCatalog:
    def __init__(self, prices):
        self.prices = dict(prices)
        self.calls = []

    def __call__(self, product_id, variation_id, location_id):
        self.calls.append((product_id, variation_id, location_id))
        return self.prices[(product_id, variation_id)]


TEA = Product("1", "1", "Tea")
CAKE = Product("2", "3", "Cake")


class CartTest(unittest.TestCase):
    def setUp(self):
        self.catalog = FakeCatalog({("1", "1"): 1000, ("2", "3"): 250})
        self.cart = Cart(self.catalog, location_id="1")

    def test_line_ref_normalizes_ids(self):
        self.assertEqual(line_ref(5), ("5", "5"))
        self.assertEqual(line_ref("5", ""), ("5", "5"))
        self.assertEqual(line_ref(5, 7), ("5", "7"))
        self.assertEqual(Product(12, None).ref, ("12", "12"))

    def test_adding_twice_increments_and_prices_once(self):
        self.cart.add_or_increment(TEA)
        line = self.cart.add_or_increment(TEA)
        self.assertEqual(line.quantity, Decimal(2))
        self.assertEqual(len(self.cart.lines), 1)
        self.assertEqual(self.catalog.calls, [("1", "1", "1")])

    def test_catalog_changes_do_not_reprice_existing_lines(self):
        self.cart.add_or_increment(TEA)
        self.catalog.prices[("1", "1")] = 9999
        self.cart.add_or_increment(TEA)
        self.assertEqual(self.cart.line(("1", "1")).unit_price_minor, 1000)
        self.assertEqual(self.cart.subtotal, 2000)

    def test_total_is_lines_minus_discount_plus_shipping_and_tax(self):
        self.cart.add_or_increment(TEA)
        self.cart.add_or_increment(TEA)
        self.cart.add_or_increment(CAKE)
        self.cart.set_discount(300)
        self.cart.set_shipping(100)
        self.cart.set_order_tax(50)
        self.assertEqual(self.cart.subtotal, 2250)
        self.assertEqual(self.cart.total, 2250 - 300 + 100 + 50)

    def test_total_never_goes_negative(self):
        self.cart.add_or_increment(CAKE)
        self.cart.set_discount(100000)
        self.assertEqual(self.cart.total, 0)

    def test_negative_adjustments_are_taken_as_absolute(self):
        self.cart.set_discount(-300)
        self.cart.set_shipping(-100)
        self.cart.set_order_tax(-7)
        self.assertEqual((self.cart.discount_minor, self.cart.shipping_minor, self.cart.order_tax_minor),
                         (300, 100, 7))

    def test_adjustments_want_minor_units(self):
        with self.assertRaises(money.InvalidAmount):
            self.cart.set_discount(1.5)

    def test_set_quantity_is_idempotent(self):
        self.cart.add_or_increment(TEA)
        self.cart.set_quantity(("1", "1"), 3)
        self.cart.set_quantity(("1", "1"), 3)
        self.assertEqual(self.cart.line(("1", "1")).quantity, Decimal(3))
        self.assertEqual(self.cart.total, 3000)

    def test_zero_or_negative_quantity_removes_the_line(self):
        self.cart.add_or_increment(TEA)
        self.cart.add_or_increment(CAKE)
        self.cart.set_quantity(("1", "1"), 0)
        self.cart.set_quantity(("2", "3"), "-1")
        self.assertEqual(self.cart.lines, [])
        self.assertEqual(self.cart.total, 0)

    def test_unknown_line_is_ignored(self):
        self.cart.set_quantity(("9", "9"), 4)
        self.cart.remove(("9", "9"))
        self.cart.set_line_discount(("9", "9"), 10)
        self.assertEqual(self.cart.lines, [])

    def test_bad_quantity_is_rejected(self):
        self.cart.add_or_increment(TEA)
        with self.assertRaises(money.InvalidAmount):
            self.cart.set_quantity(("1", "1"), "two")
        self.assertEqual(self.cart.line(("1", "1")).quantity, Decimal(1))

    def test_fractional_quantity_rounds_line_total_half_even(self):
        catalog = FakeCatalog({("7", "7"): 333})
        cart = Cart(catalog)
        cart.add_or_increment(Product("7", "7"))
        cart.set_quantity(("7", "7"), "1.5")
        self.assertEqual(cart.total, 500)

    def test_line_discount_and_tax(self):
        self.cart.add_or_increment(TEA)
        self.cart.set_line_discount(("1", "1"), 150)
        self.cart.set_line_tax(("1", "1"), 20)
        self.assertEqual(self.cart.line(("1", "1")).line_total, 1000 - 150 + 20)
        with self.assertRaises(money.InvalidAmount):
            self.cart.set_line_discount(("1", "1"), -5)

    def test_negative_catalog_price_is_rejected(self):
        catalog = FakeCatalog({("1", "1"): -10})
        cart = Cart(catalog)
        with self.assertRaises(money.InvalidAmount):
            cart.add_or_increment(TEA)
        self.assertEqual(cart.lines, [])

    def test_lines_keep_insertion_order(self):
        self.cart.add_or_increment(CAKE)
        self.cart.add_or_increment(TEA)
        self.cart.add_or_increment(CAKE)
        self.assertEqual([l.ref for l in self.cart.lines], [("2", "3"), ("1", "1")])

    def test_snapshot_is_frozen_and_detached(self):
        self.cart.add_or_increment(TEA)
        self.cart.set_discount(100)
        snap = self.cart.snapshot()
        self.cart.add_or_increment(CAKE)
        self.cart.set_discount(0)
        self.assertEqual(len(snap.lines), 1)
        self.assertEqual(snap.total, 900)
        with self.assertRaises(dataclasses.FrozenInstanceError):
            snap.discount_minor = 0

    def test_clear_and_restore(self):
        self.cart.add_or_increment(TEA)
        self.cart.set_shipping(50)
        snap = self.cart.snapshot()
        self.cart.clear()
        self.assertEqual(self.cart.total, 0)
        self.assertEqual(self.cart.shipping_minor, 0)
        self.cart.restore(snap)
        self.assertEqual(self.cart.total, 1050)
        self.assertEqual(self.cart.item_count, Decimal(1))

    def test_empty_snapshot(self):
        snap = CartSnapshot(lines=())
        self.assertTrue(snap.is_empty)
        self.assertEqual(snap.total, 0)
        line = LineItem("1", "1", "Tea", 250, Decimal(2), discount_minor=100)
        self.assertEqual(CartSnapshot(lines=(line,)).subtotal, 400)

    def test_random_edit_sequences_keep_the_total_consistent(self):
        prices = {("1", "1"): 1000, ("2", "3"): 250, ("7", "7"): 333, ("8", "9"): 1}
        quantities = ["1", "2", "3", "0.5", "1.25", "2.5", "0.333", "0", "-1"]
        for seed in range(25):
            rng = random.Random(seed)
            cart = Cart(FakeCatalog(prices), location_id="1")
            shadow = {}
            discount = shipping = order_tax = 0
            for step in range(60):
                ref = rng.choice(sorted(prices))
                op = rng.randrange(8)
                if op in (0, 1):
                    cart.add_or_increment(Product(*ref))
                    line = shadow.setdefault(ref, {"qty": Decimal(0), "disc": 0, "tax": 0})
                    line["qty"] += 1
                elif op == 2:
                    qty = Decimal(rng.choice(quantities))
                    cart.set_quantity(ref, qty)
                    if ref in shadow:
                        if qty <= 0:
                            del shadow[ref]
                        else:
                            shadow[ref]["qty"] = qty
                elif op == 3:
                    cart.remove(ref)
                    shadow.pop(ref, None)
                elif op == 4:
                    amount = rng.randint(0, 1500)
                    cart.set_line_discount(ref, amount)
                    if ref in shadow:
                        shadow[ref]["disc"] = amount
                elif op == 5:
                    amount = rng.randint(0, 300)
                    cart.set_line_tax(ref, amount)
                    if ref in shadow:
                        shadow[ref]["tax"] = amount
                elif op == 6:
                    discount = rng.randint(-4000, 4000)
                    cart.set_discount(discount)
                    discount = abs(discount)
                else:
                    shipping, order_tax = rng.randint(-500, 500), rng.randint(-500, 500)
                    cart.set_shipping(shipping)
                    cart.set_order_tax(order_tax)
                    shipping, order_tax = abs(shipping), abs(order_tax)

                line_totals = [
                    int((Decimal(prices[r]) * l["qty"]).quantize(Decimal(1), rounding=ROUND_HALF_EVEN))
                    - l["disc"] + l["tax"]
                    for r, l in shadow.items()
                ]
                expected = max(0, sum(line_totals) - discount + shipping + order_tax)
                with self.subTest(seed=seed, step=step):
                    self.assertEqual([l.ref for l in cart.lines], list(shadow))
                    self.assertEqual(cart.subtotal, sum(line_totals))
                    self.assertEqual(cart.total, expected)
                    self.assertEqual(cart.snapshot().total, expected)
                    self.assertGreaterEqual(min(cart.discount_minor, cart.shipping_minor, cart.order_tax_minor), 0)


class SnapshotFromLinesTest(unittest.TestCase):
    def test_lines_carry_their_own_cost(self):
        snap = snapshot_from_lines(
            [
                {"product_id": 7, "name": "Flour", "unit_price_minor": 1800, "quantity": "10", "discount_minor": 500},
                {"product_id": "8", "variation_id": "9", "unit_price_minor": 99, "quantity": 3, "tax_minor": 12},
            ],
            discount_minor=-100,
            shipping_minor=250,
        )
        self.assertEqual([l.ref for l in snap.lines], [("7", "7"), ("8", "9")])
        self.assertEqual(snap.lines[0].name, "Flour")
        self.assertEqual(snap.lines[1].name, "8")
        self.assertEqual(snap.subtotal, 17500 + 297 + 12)
        self.assertEqual(snap.discount_minor, 100)
        self.assertEqual(snap.total, 17809 - 100 + 250)

    def test_bad_lines_are_rejected(self):
        good = {"product_id": "7", "unit_price_minor": 100, "quantity": 1}
        cases = (
            [dict(good, product_id=None)],
            [dict(good, unit_price_minor=-1)],
            [dict(good, unit_price_minor="1.00")],
            [dict(good, quantity="0")],
            [dict(good, quantity="lots")],
            [good, dict(good)],
        )
        for lines in cases:
            with self.subTest(lines=lines):
                with self.assertRaises(money.InvalidAmount):
                    snapshot_from_lines(lines)

    def test_no_lines(self):
        self.assertTrue(snapshot_from_lines([]).is_empty)


if __name__ == "__main__":
    unittest.main()
