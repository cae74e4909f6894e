from woodcart.tools.cart_shapes import (
    CartItemCollectionShape,
    CartItemsShape,
    ItemsShape,
    UnrecognizedShape,
    classify,
)


def _wrap(cart):
    return {"data": {"updateCartItems": {"cart": cart}}}


def test_cart_item_collection_shape():
    shape = classify(_wrap({"cartItemCollection": {"cartItems": [{"itemId": "items_1-1", "quantity": 2}]}}))
    assert isinstance(shape, CartItemCollectionShape)
    assert shape.raw_items == [{"itemId": "items_1-1", "quantity": 2}]


def test_items_shape():
    shape = classify(_wrap({"items": [{"itemId": "items_1-2"}]}))
    assert isinstance(shape, ItemsShape)


def test_cart_items_shape_and_empty_list():
    shape = classify(_wrap({"cartItems": []}))
    assert isinstance(shape, CartItemsShape)
    assert shape.raw_items == []


def test_unrecognized_shape_keeps_bounded_snippet():
    body = {"data": {"somethingElse": "x" * 5000}}
    shape = classify(body)
    assert isinstance(shape, UnrecognizedShape)
    assert "somethingElse" in shape.snippet
    assert len(shape.snippet) <= 800
