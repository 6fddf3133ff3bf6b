from journey_engine.models.journey import Journey, JourneyVersion
from journey_engine.models.enrollment import JourneyActivityLog, JourneyEnrollment
from journey_engine.models.customer import CustomerEvent, CustomerProfile, SegmentMembership
from journey_engine.models.messaging import OutboundMessage
from journey_engine.models.rate_limit import RateLimitPermit, RateLimitScope
