from enum import Enum


class StaffApprovalStatus(str, Enum):
    Pending = "pending"
    Approved = "approved"
    Rejected = "rejected"


class LeaveType(str, Enum):
    Leave = "leave"
    Late = "late"


class LeaveStatus(str, Enum):
    Requested = "requested"
    WaitingForArrival = "waiting_for_arrival_confirmation"
    AcknowledgedByStaff = "acknowledged_by_staff"
    ApprovedByHOD = "approved_by_hod"
    RejectedByHOD = "rejected_by_hod"


# Leave requests may be withdrawn only before they are approved or confirmed
DELETABLE_LEAVE_STATUSES = {
    LeaveStatus.Requested.value,
    LeaveStatus.WaitingForArrival.value,
    LeaveStatus.RejectedByHOD.value,
}


class MarksheetStatus(str, Enum):
    VerifiedByStaff = "verified_by_staff"
    DispatchRequested = "dispatch_requested"
    ApprovedByHOD = "approved_by_hod"
    RejectedByHOD = "rejected_by_hod"
    Dispatched = "dispatched"
    RescheduledByHOD = "rescheduled_by_hod"


class WhatsAppDeliveryStatus(str, Enum):
    Pending = "pending"
    Sent = "sent"
    Partial = "partial"
    Failed = "failed"


class NotificationType(str, Enum):
    StaffAccountApproval = "staff_account_approval"
    StaffAccountStatus = "staff_account_status"
    StaffAccountApproved = "staff_account_approved"
    StaffAccountRejected = "staff_account_rejected"
    LeaveRequest = "leave_request"
    LateArrival = "late_arrival"
    LeaveApproval = "leave_approval"
    LeaveDeleted = "leave_deleted"
    DispatchRequest = "dispatch_request"
    MarksheetApproval = "marksheet_approval"
    MarksheetDispatch = "marksheet_dispatch"
    DispatchReport = "dispatch_report"
