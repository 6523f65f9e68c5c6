from common.workflow import StatusWorkflow
from finance.models import Quote

QuoteStatus = Quote.Status

QUOTE_WORKFLOW = StatusWorkflow(
    "quote",
    QuoteStatus.values,
    {
        QuoteStatus.DRAFT: [QuoteStatus.SENT, QuoteStatus.EXPIRED],
        QuoteStatus.SENT: [QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED],
        QuoteStatus.ACCEPTED: [],
        QuoteStatus.REJECTED: [],
        QuoteStatus.EXPIRED: [],
    },
)
