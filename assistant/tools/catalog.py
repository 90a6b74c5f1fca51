"""Static catalog of data-lookup functions the assistant may offer the model."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    requires_admin: bool = False
    requires_domain: str | None = None

    def as_provider_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _params(properties: dict[str, tuple[str, str]], required: tuple[str, ...] = ()) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            name: {"type": kind, "description": description}
            for name, (kind, description) in properties.items()
        },
    }
    if required:
        schema["required"] = list(required)
    return schema


DEFAULT_CATALOG: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="searchEmployees",
        description="Search for employees by name, email, or employee ID",
        parameters=_params(
            {"query": ("string", "Search query (name, email, or employee ID)")}, ("query",)
        ),
    ),
    ToolDefinition(
        name="getEmployeeDetails",
        description="Get detailed information about a specific employee",
        parameters=_params(
            {"employeeId": ("string", "The employee user ID or employee code")}, ("employeeId",)
        ),
    ),
    ToolDefinition(
        name="getEmployeeSalary",
        description="Get salary details for an employee (admin only)",
        parameters=_params({"employeeId": ("string", "The employee user ID")}, ("employeeId",)),
        requires_admin=True,
    ),
    ToolDefinition(
        name="getSubscriptionUsers",
        description="Get users of a specific subscription/service",
        parameters=_params(
            {"serviceName": ("string", "Name of the service (e.g., Microsoft 365, Slack)")},
            ("serviceName",),
        ),
        requires_domain="operations",
    ),
    ToolDefinition(
        name="listSubscriptions",
        description="List all subscriptions in the organization",
        parameters=_params({"status": ("string", "Filter by status (ACTIVE, PAUSED, CANCELLED)")}),
        requires_domain="operations",
    ),
    ToolDefinition(
        name="getEmployeeAssets",
        description="Get assets assigned to an employee",
        parameters=_params(
            {"employeeId": ("string", "The employee user ID or name")}, ("employeeId",)
        ),
        requires_domain="operations",
    ),
    ToolDefinition(
        name="listAssets",
        description="List or search assets in the organization by model, brand, type, or status",
        parameters=_params(
            {
                "query": ("string", "Search by model name or brand"),
                "type": ("string", "Filter by asset type (Laptop, Desktop, Phone, etc.)"),
                "status": ("string", "Filter by status (IN_USE, SPARE, REPAIR, DISPOSED)"),
            }
        ),
        requires_domain="operations",
    ),
    ToolDefinition(
        name="getPendingLeaveRequests",
        description="Get pending leave requests awaiting approval",
        requires_domain="hr",
    ),
    ToolDefinition(
        name="getEmployeeLeaveBalance",
        description="Get leave balance for an employee",
        parameters=_params({"employeeId": ("string", "The employee user ID")}, ("employeeId",)),
    ),
    ToolDefinition(
        name="getExpiringDocuments",
        description="Get employee documents expiring soon (QID, passport, etc.)",
        parameters=_params(
            {"daysAhead": ("number", "Number of days to look ahead (default: 30)")}
        ),
        requires_domain="hr",
    ),
    ToolDefinition(
        name="getTotalPayroll",
        description="Get total monthly payroll cost (admin only)",
        requires_admin=True,
    ),
    ToolDefinition(
        name="getEmployeeCount",
        description="Get the total number of employees",
    ),
    ToolDefinition(
        name="getAssetDepreciation",
        description="Get depreciation information for assets",
        parameters=_params(
            {"assetId": ("string", "Optional specific asset ID or model name to look up")}
        ),
        requires_domain="operations",
    ),
    ToolDefinition(
        name="getPayrollRunStatus",
        description="Get status of current and recent payroll runs (admin only)",
        parameters=_params(
            {
                "month": ("number", "Month number (1-12), defaults to current month"),
                "year": ("number", "Year, defaults to current year"),
            }
        ),
        requires_admin=True,
    ),
    ToolDefinition(
        name="getPurchaseRequestSummary",
        description="Get summary of purchase requests by status",
        parameters=_params(
            {"status": ("string", "Filter by status (DRAFT, PENDING, APPROVED, REJECTED)")}
        ),
        requires_domain="purchasing",
    ),
    ToolDefinition(
        name="searchSuppliers",
        description="Search for suppliers by name or category",
        parameters=_params({"query": ("string", "Search query (supplier name or category)")}),
        requires_domain="purchasing",
    ),
    ToolDefinition(
        name="getProjectProgress",
        description="Get project status and progress information",
        parameters=_params(
            {
                "projectId": ("string", "Optional project ID or name"),
                "status": ("string", "Filter by status (PLANNING, ACTIVE, ON_HOLD, COMPLETED)"),
            }
        ),
        requires_domain="projects",
    ),
)
