"""Default business tools exposed to the model for function calling."""
from typing import Any, Dict, List

from .base import ToolParameter, ToolSpec
from ..collaborators import BookCatalogSearch, CustomerOrderSearch, InvoiceLookup, OrderLookup

NO_BOOKS_FOUND = "No matching books were found in the catalog."


def build_business_tools(
    orders: OrderLookup,
    customer_orders: CustomerOrderSearch,
    invoices: InvoiceLookup,
    catalog: BookCatalogSearch
) -> List[ToolSpec]:
    """Build the four lookup tools over the given collaborators."""

    async def get_order_details(args: Dict[str, Any]) -> Dict[str, Any]:
        order_id = str(args.get("order_id", "")).strip()
        order = await orders.get_order(order_id)
        if order is None:
            return {"found": False, "order_id": order_id}
        return {"found": True, "order": order}

    async def search_customer_orders(args: Dict[str, Any]) -> Dict[str, Any]:
        identifier = str(args.get("customer_identifier", "")).strip()
        return await customer_orders.search_orders(identifier)

    async def get_invoice_details(args: Dict[str, Any]) -> Dict[str, Any]:
        invoice_id = str(args.get("invoice_id", "")).strip()
        invoice = await invoices.get_invoice(invoice_id)
        if invoice is None:
            return {"found": False, "invoice_id": invoice_id}
        return {"found": True, "invoice": invoice}

    async def search_books(args: Dict[str, Any]) -> Dict[str, Any]:
        query = str(args.get("query", "")).strip()
        answer = await catalog.search(query)
        return {"query": query, "answer": answer or NO_BOOKS_FOUND}

    return [
        ToolSpec(
            name="get_order_details",
            description="Get the details of an order (status, items, totals, delivery) by its order id.",
            handler=get_order_details,
            parameters=[ToolParameter("order_id", "Order identifier, e.g. 1024")],
            required=["order_id"],
        ),
        ToolSpec(
            name="search_customer_orders",
            description="Find a customer's orders by customer id, email, phone number or name.",
            handler=search_customer_orders,
            parameters=[ToolParameter("customer_identifier", "Customer id, email, phone or full name")],
            required=["customer_identifier"],
        ),
        ToolSpec(
            name="get_invoice_details",
            description="Get an invoice (amounts, tax, related order) by its invoice id.",
            handler=get_invoice_details,
            parameters=[ToolParameter("invoice_id", "Invoice identifier")],
            required=["invoice_id"],
        ),
        ToolSpec(
            name="search_books",
            description="Search the book catalog (titles, authors, categories, prices, stock) and answer questions about books.",
            handler=search_books,
            parameters=[ToolParameter("query", "What the user is looking for")],
            required=["query"],
        ),
    ]
