import time
import uuid
from enum import Enum, IntEnum
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from .errors import CharacterNotFound, InvalidTransition


def new_id(prefix: str) -> str:
    # time_ns keeps ids creation ordered, the suffix keeps them unique within one tick
    return f"{prefix}{time.time_ns()}-{uuid.uuid4().hex[:6]}"


class Step(IntEnum):
    Characters = 1
    World = 2
    Story = 3
    Preview = 4
    FinalRender = 5


class JobStatus(IntEnum):
    Idle = 0
    InProgress = 1
    Completed = 2
    Failed = 3


ALLOWED_TRANSITIONS = {
    JobStatus.Idle: {JobStatus.InProgress},
    JobStatus.InProgress: {JobStatus.Completed, JobStatus.Failed},
    JobStatus.Completed: set(),
    JobStatus.Failed: {JobStatus.InProgress},
}


class VoiceStyle(str, Enum):
    AdultFemale = "Adult Female"
    AdultMale = "Adult Male"
    ChildFemale = "Child Female"
    ChildMale = "Child Male"
    Narrator = "Narrator"


class WorldStyle(str, Enum):
    Storybook3D = "Storybook 3D"
    PixarLike = "Pixar-Like"
    Claymation = "Claymation"
    Watercolor3D = "Watercolor 3D"
    Anime3D = "Anime 3D"


class StoryTemplate(str, Enum):
    Farm = "Saturday on the Farm"
    Beach = "Beach Day"
    Fort = "Rainy-Day Fort"
    Birthday = "Birthday Surprise"
    Stargazer = "Stargazer Trip"
    Mystery = "Mystery of the Missing Toy"
    SciFi = "Spaceship Adventure"
    School = "First Day of School"
    Baking = "Baking Cookies"
    Treehouse = "Building a Treehouse"
    TalentShow = "The Big Talent Show"
    LostPet = "The Lost Pet Adventure"
    Custom = "Custom Outline"
    AIQuick = "AI Quick Story"


MAX_CHARACTER_PHOTOS = 4


class Character(BaseModel):
    id: str = Field(default_factory=lambda: new_id("char"))
    name: str = ""
    role: str = "Main Character"
    age: str = ""
    voice_style: VoiceStyle = VoiceStyle.ChildFemale
    costume_color: str = "#3b82f6"
    photos: List[str] = Field(default_factory=list, max_length=MAX_CHARACTER_PHOTOS)
    avatar_url: str = ""
    details: str = ""
    is_pet: bool = False


class World(BaseModel):
    style: WorldStyle = WorldStyle.Storybook3D
    stylization_strength: int = Field(60, ge=10, le=100)
    background_set: str = "A cozy, sunlit living room with a big window."
    time_period: str = "Modern"
    season: str = "Autumn"
    time_of_day: str = "Afternoon"
    lighting_mood: str = "Warm and inviting"
    props: List[str] = Field(default_factory=list)
    preview_url: str = ""


class Story(BaseModel):
    template: StoryTemplate = StoryTemplate.Fort
    title: str = ""
    synopsis: str = ""
    scenes: List[str] = Field(default_factory=lambda: [""], min_length=1)
    location: str = ""
    age_group: str = ""
    time_period: str = "Modern"
    expanded_script: str = ""
    target_duration: int = Field(3, ge=1)  # minutes


class SubtitleSettings(BaseModel):
    font_size: int = Field(22, ge=14, le=36)
    color: str = "#FFFFFF"
    background_color: str = "rgba(0, 0, 0, 0.75)"
    font_family: str = "Arial"


class FinalUrls(BaseModel):
    model_config = ConfigDict(frozen=True)

    film: str
    trailer: str
    shorts: List[str] = Field(default_factory=list)
    captions: str
    poster: str
    thumbnails: List[str] = Field(default_factory=list)
    script: str

    def with_captions(self, captions: str) -> "FinalUrls":
        return self.model_copy(update={"captions": captions})


class GenerationJob(BaseModel):
    id: str = Field(default_factory=lambda: new_id("job"))
    created_at: float = Field(default_factory=time.time)
    status: JobStatus = JobStatus.Idle
    progress: int = Field(0, ge=0, le=100)
    message: str = ""
    story_title: str = ""
    trailer_url: Optional[str] = None
    final_urls: Optional[FinalUrls] = None
    cc_settings: Optional[SubtitleSettings] = Field(default_factory=SubtitleSettings)
    is_draft: bool = True
    current_step: Step = Step.Characters
    characters: List[Character] = Field(default_factory=lambda: [Character()], min_length=1)
    world: World = Field(default_factory=World)
    story: Story = Field(default_factory=Story)
    warnings: List[str] = Field(default_factory=list)

    def transition(self, status: JobStatus) -> "GenerationJob":
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(f"Job {self.id} cannot move from {self.status.name} to {status.name}")
        self.status = status
        return self

    def character(self, character_id: str) -> Character:
        for c in self.characters:
            if c.id == character_id:
                return c
        raise CharacterNotFound(character_id)


def new_job(**overrides) -> GenerationJob:
    return GenerationJob(**overrides)


class JobPatch(BaseModel):
    """Fields the wizard may edit on the active job."""
    story_title: Optional[str] = None
    characters: Optional[List[Character]] = Field(None, min_length=1)
    world: Optional[World] = None
    story: Optional[Story] = None
    cc_settings: Optional[SubtitleSettings] = None


class ThrottleEvent(BaseModel):
    attempt: int
    delay_ms: int
    reason: str


class RenderUpdate(BaseModel):
    stage: str
    progress: int
    message: str
